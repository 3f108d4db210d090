"""
Messaging Repository

Repository pattern for messaging database operations.
Provides CRUD operations and common queries for messaging tables.

Get-or-create operations insert inside a SAVEPOINT and fall back to reading
the existing row on IntegrityError, so concurrent deliveries for the same
customer, conversation or platform message converge on one row.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from messaging_gateway.persistence.models import (
    Agent,
    Conversation,
    ConversationStatus,
    Customer,
    Integration,
    IntegrationStatus,
    LifecycleStage,
    Message,
    MessageDirection,
    MessageStatus,
    RoutingRule,
    Team,
)
from messaging_gateway.providers.base import SenderType, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Delivery statuses only move forward; failed can be reported at any time
STATUS_ORDER = {
    MessageStatus.PENDING.value: 0,
    MessageStatus.SENT.value: 1,
    MessageStatus.DELIVERED.value: 2,
    MessageStatus.READ.value: 3,
}


def active_key_for(customer_id: UUID, platform: str) -> str:
    return f"{customer_id}:{platform}"


def direction_for(sender_type: str) -> MessageDirection:
    """Customer messages are inbound, everything else is outbound."""
    if sender_type == SenderType.CUSTOMER.value:
        return MessageDirection.INBOUND
    return MessageDirection.OUTBOUND


class MessagingRepository:
    """Repository for messaging database operations."""

    def __init__(self, db: Session):
        self.db = db

    def _insert_or_get(self, obj: T, lookup: Callable[[], T | None]) -> tuple[T, bool]:
        """
        Insert ``obj`` in a savepoint; on a unique violation return the row
        that won the race instead.
        """
        try:
            with self.db.begin_nested():
                self.db.add(obj)
            return obj, True
        except IntegrityError:
            existing = lookup()
            if existing is None:
                raise
            return existing, False

    # =========================================================================
    # Integrations
    # =========================================================================

    def get_integration(self, user_id: UUID, integration_id: UUID) -> Integration | None:
        """Get an integration owned by a user."""
        return self.db.scalar(
            select(Integration).where(
                Integration.id == integration_id,
                Integration.user_id == user_id,
            )
        )

    def get_integration_by_name(self, user_id: UUID, platform: str, name: str) -> Integration | None:
        return self.db.scalar(
            select(Integration).where(
                Integration.user_id == user_id,
                Integration.platform == platform,
                Integration.name == name,
            )
        )

    def upsert_integration(
        self,
        user_id: UUID,
        platform: str,
        provider: str,
        name: str,
        config: dict[str, Any],
        secrets_encrypted: str | None,
        status: str = IntegrationStatus.ACTIVE.value,
        webhook_url: str | None = None,
    ) -> tuple[Integration, bool]:
        """
        Create or update the integration keyed by (user, platform, name).

        Returns:
            Tuple of (integration, created)
        """
        integration = self.get_integration_by_name(user_id, platform, name)
        created = integration is None
        if integration is None:
            integration = Integration(user_id=user_id, platform=platform, name=name)
            self.db.add(integration)

        integration.provider = provider
        integration.config = dict(config)
        integration.secrets_encrypted = secrets_encrypted
        integration.status = status
        integration.webhook_url = webhook_url
        integration.last_error = None
        integration.updated_at = utcnow()
        self.db.flush()
        return integration, created

    def deactivate_other_integrations(self, user_id: UUID, platform: str, keep_id: UUID) -> int:
        """Deactivate every other active integration of (user, platform)."""
        others = self.db.scalars(
            select(Integration).where(
                Integration.user_id == user_id,
                Integration.platform == platform,
                Integration.status == IntegrationStatus.ACTIVE.value,
                Integration.id != keep_id,
            )
        ).all()
        for integration in others:
            integration.status = IntegrationStatus.INACTIVE.value
            integration.updated_at = utcnow()
        self.db.flush()
        return len(others)

    def set_integration_status(
        self,
        integration: Integration,
        status: IntegrationStatus,
        last_error: str | None = None,
    ) -> None:
        integration.status = status.value
        integration.last_error = last_error
        integration.updated_at = utcnow()
        self.db.flush()

    def list_integrations(self, user_id: UUID, platform: str | None = None) -> list[Integration]:
        """List a user's integrations."""
        query = select(Integration).where(Integration.user_id == user_id)
        if platform:
            query = query.where(Integration.platform == platform)
        return list(self.db.scalars(query.order_by(Integration.platform, Integration.name)).all())

    def get_active_integration(self, user_id: UUID, platform: str) -> Integration | None:
        """The active integration of a user for a platform."""
        return self.db.scalar(
            select(Integration)
            .where(
                Integration.user_id == user_id,
                Integration.platform == platform,
                Integration.status == IntegrationStatus.ACTIVE.value,
            )
            .order_by(Integration.updated_at.desc())
            .limit(1)
        )

    def list_active_integrations(self, platform: str, provider: str | None = None) -> list[Integration]:
        """All active integrations of a platform, across tenants."""
        query = select(Integration).where(
            Integration.platform == platform,
            Integration.status == IntegrationStatus.ACTIVE.value,
        )
        if provider:
            query = query.where(Integration.provider == provider)
        return list(self.db.scalars(query).all())

    def delete_integration(self, user_id: UUID, integration_id: UUID) -> bool:
        integration = self.get_integration(user_id, integration_id)
        if integration is None:
            return False
        self.db.delete(integration)
        self.db.flush()
        return True

    # =========================================================================
    # Customers
    # =========================================================================

    def get_customer(self, user_id: UUID, platform: str, external_id: str) -> Customer | None:
        return self.db.scalar(
            select(Customer).where(
                Customer.user_id == user_id,
                Customer.platform == platform,
                Customer.external_id == external_id,
            )
        )

    def get_customer_by_id(self, user_id: UUID, customer_id: UUID) -> Customer | None:
        return self.db.scalar(
            select(Customer).where(Customer.id == customer_id, Customer.user_id == user_id)
        )

    def get_or_create_customer(
        self,
        user_id: UUID,
        platform: str,
        external_id: str,
        display_name: str | None = None,
    ) -> tuple[Customer, bool]:
        """
        Get the customer for an external identity, creating a lead if new.

        Returns:
            Tuple of (customer, created) where created is True if new.
        """
        now = utcnow()
        customer = self.get_customer(user_id, platform, external_id)
        created = False
        if customer is None:
            customer, created = self._insert_or_get(
                Customer(
                    user_id=user_id,
                    platform=platform,
                    external_id=external_id,
                    display_name=display_name,
                    lifecycle_stage=LifecycleStage.LEAD.value,
                    lead_score=0,
                    tags=[],
                    meta={"acquisition_source": platform, "first_contact_at": now.isoformat()},
                    last_interaction_at=now,
                ),
                lambda: self.get_customer(user_id, platform, external_id),
            )

        if not created:
            customer.last_interaction_at = now
            customer.updated_at = now
            if display_name and not customer.display_name:
                customer.display_name = display_name

        return customer, created

    # =========================================================================
    # Conversations
    # =========================================================================

    def get_conversation(self, user_id: UUID, conversation_id: UUID) -> Conversation | None:
        """Get a conversation owned by a user."""
        return self.db.scalar(
            select(Conversation).where(
                Conversation.id == conversation_id,
                Conversation.user_id == user_id,
            )
        )

    def get_active_conversation(self, customer_id: UUID, platform: str) -> Conversation | None:
        return self.db.scalar(
            select(Conversation).where(Conversation.active_key == active_key_for(customer_id, platform))
        )

    def get_or_create_active_conversation(
        self,
        customer_id: UUID,
        user_id: UUID,
        platform: str,
    ) -> tuple[Conversation, bool]:
        """
        Get the active (not closed) conversation with a customer on a platform.

        Returns:
            Tuple of (conversation, created) where created is True if new.
        """
        conversation = self.get_active_conversation(customer_id, platform)
        if conversation is not None:
            conversation.updated_at = utcnow()
            return conversation, False

        return self._insert_or_get(
            Conversation(
                user_id=user_id,
                customer_id=customer_id,
                platform=platform,
                status=ConversationStatus.OPEN.value,
                tags=[],
                message_count=0,
                active_key=active_key_for(customer_id, platform),
            ),
            lambda: self.get_active_conversation(customer_id, platform),
        )

    def set_conversation_status(self, conversation: Conversation, status: ConversationStatus) -> None:
        """Persist a status; closing releases the active slot."""
        conversation.status = status.value
        conversation.updated_at = utcnow()
        if status == ConversationStatus.CLOSED:
            conversation.active_key = None
        self.db.flush()

    def add_conversation_tag(self, conversation: Conversation, tag: str) -> bool:
        """Add a tag once. Returns True if it was added."""
        tags = list(conversation.tags or [])
        if tag in tags:
            return False
        # Reassign so the JSON column is flagged dirty
        conversation.tags = tags + [tag]
        return True

    def list_conversations(
        self,
        user_id: UUID,
        status: ConversationStatus | None = None,
        platform: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Conversation]:
        """List conversations for a user, most recent first."""
        query = select(Conversation).where(Conversation.user_id == user_id)
        if status:
            query = query.where(Conversation.status == status.value)
        if platform:
            query = query.where(Conversation.platform == platform)

        return list(
            self.db.scalars(
                query.order_by(Conversation.updated_at.desc()).offset(offset).limit(limit)
            ).all()
        )

    def count_conversations_for_customer(self, customer_id: UUID) -> int:
        return self.db.scalar(
            select(func.count(Conversation.id)).where(Conversation.customer_id == customer_id)
        ) or 0

    # =========================================================================
    # Messages
    # =========================================================================

    def get_message_by_platform_id(
        self,
        user_id: UUID,
        platform: str,
        platform_message_id: str,
    ) -> Message | None:
        """Get message by platform message ID (for idempotency)."""
        return self.db.scalar(
            select(Message).where(
                Message.user_id == user_id,
                Message.platform == platform,
                Message.platform_message_id == platform_message_id,
            )
        )

    def is_message_processed(self, user_id: UUID, platform: str, platform_message_id: str) -> bool:
        """Check if a platform message has already been stored."""
        return self.get_message_by_platform_id(user_id, platform, platform_message_id) is not None

    def store_message(
        self,
        conversation: Conversation,
        sender_type: SenderType | str,
        content: str,
        message_type: str = "text",
        platform_message_id: str | None = None,
        sender_id: str | None = None,
        media_url: str | None = None,
        status: MessageStatus | None = None,
        timestamp: datetime | None = None,
    ) -> tuple[Message, bool]:
        """
        Store a message in a conversation.

        Idempotent on (user, platform, platform_message_id) when an id is
        given. Direction is derived from the sender type.

        Returns:
            Tuple of (message, created) where created is True if new.
        """
        sender_type = SenderType(sender_type).value
        direction = direction_for(sender_type)
        user_id = conversation.user_id
        platform = conversation.platform

        if platform_message_id:
            existing = self.get_message_by_platform_id(user_id, platform, platform_message_id)
            if existing is not None:
                return existing, False

        if status is None:
            status = MessageStatus.DELIVERED if direction == MessageDirection.INBOUND else MessageStatus.SENT
        now = timestamp or utcnow()

        message = Message(
            user_id=user_id,
            conversation_id=conversation.id,
            customer_id=conversation.customer_id,
            platform=platform,
            sender_type=sender_type,
            sender_id=sender_id,
            direction=direction.value,
            message_type=message_type,
            content=content,
            media_url=media_url,
            platform_message_id=platform_message_id,
            status=status.value,
            sent_at=now if direction == MessageDirection.OUTBOUND else None,
        )

        if platform_message_id:
            message, created = self._insert_or_get(
                message,
                lambda: self.get_message_by_platform_id(user_id, platform, platform_message_id),
            )
        else:
            self.db.add(message)
            self.db.flush()
            created = True

        if created:
            conversation.message_count = (conversation.message_count or 0) + 1
            conversation.last_message_at = now
            conversation.updated_at = utcnow()

        return message, created

    def update_message_status(
        self,
        user_id: UUID,
        platform: str,
        platform_message_id: str,
        status: MessageStatus | str,
        timestamp: datetime | None = None,
        error_message: str | None = None,
    ) -> Message | None:
        """
        Apply a provider delivery status to a stored message.

        Statuses never move backwards (a late "delivered" after "read" is
        ignored); "failed" is always applied.
        """
        message = self.get_message_by_platform_id(user_id, platform, platform_message_id)
        if message is None:
            logger.debug(
                "Status for unknown message",
                extra={"platform": platform, "platform_message_id": platform_message_id},
            )
            return None

        status = MessageStatus(status)
        now = timestamp or utcnow()
        if status == MessageStatus.FAILED:
            message.status = status.value
            message.error_message = error_message
        elif STATUS_ORDER.get(status.value, 0) > STATUS_ORDER.get(message.status, 0):
            message.status = status.value

        if status == MessageStatus.DELIVERED and message.delivered_at is None:
            message.delivered_at = now
        elif status == MessageStatus.READ:
            message.read_at = message.read_at or now
            message.delivered_at = message.delivered_at or now
        message.updated_at = utcnow()
        return message

    def set_message_classification(self, message: Message, classification: dict[str, Any]) -> None:
        message.classification = dict(classification)
        message.sentiment = classification.get("sentiment")
        message.urgency_score = classification.get("urgency_score")
        message.intent = classification.get("intent")

    def recent_classifications(self, conversation_id: UUID, limit: int = 5) -> list[dict[str, Any]]:
        """Classifications of the latest classified messages, newest first."""
        rows = self.db.scalars(
            select(Message.classification)
            .where(
                Message.conversation_id == conversation_id,
                Message.classification.is_not(None),
            )
            .order_by(Message.created_at.desc())
            .limit(limit)
        ).all()
        return [row for row in rows if row]

    def count_messages(self, conversation_id: UUID) -> int:
        return self.db.scalar(
            select(func.count(Message.id)).where(Message.conversation_id == conversation_id)
        ) or 0

    def list_messages(self, conversation_id: UUID, limit: int = 50) -> list[Message]:
        """Messages of a conversation, oldest first."""
        return list(
            self.db.scalars(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc())
                .limit(limit)
            ).all()
        )

    # =========================================================================
    # Routing rules, teams, agents
    # =========================================================================

    def list_active_routing_rules(self, user_id: UUID) -> list[RoutingRule]:
        """Active rules of a user, highest priority first."""
        return list(
            self.db.scalars(
                select(RoutingRule)
                .where(RoutingRule.user_id == user_id, RoutingRule.is_active.is_(True))
                .order_by(RoutingRule.priority.desc(), RoutingRule.created_at.asc())
            ).all()
        )

    def create_routing_rule(
        self,
        user_id: UUID,
        name: str,
        priority: int,
        conditions: dict[str, Any],
        actions: dict[str, Any],
    ) -> RoutingRule:
        rule = RoutingRule(
            user_id=user_id,
            name=name,
            priority=priority,
            conditions=dict(conditions),
            actions=dict(actions),
            is_active=True,
        )
        self.db.add(rule)
        self.db.flush()
        return rule

    def get_team_by_name(self, user_id: UUID, name: str) -> Team | None:
        return self.db.scalar(select(Team).where(Team.user_id == user_id, Team.name == name))

    def get_team(self, user_id: UUID, team_id: UUID) -> Team | None:
        return self.db.scalar(select(Team).where(Team.user_id == user_id, Team.id == team_id))

    def create_team(self, user_id: UUID, name: str) -> Team:
        team = Team(user_id=user_id, name=name)
        self.db.add(team)
        self.db.flush()
        return team

    def get_agent_by_name(self, user_id: UUID, name: str) -> Agent | None:
        return self.db.scalar(select(Agent).where(Agent.user_id == user_id, Agent.name == name))

    def get_agent(self, user_id: UUID, agent_id: UUID) -> Agent | None:
        return self.db.scalar(select(Agent).where(Agent.user_id == user_id, Agent.id == agent_id))

    def create_agent(
        self,
        user_id: UUID,
        name: str,
        team_id: UUID | None = None,
        email: str | None = None,
    ) -> Agent:
        agent = Agent(user_id=user_id, name=name, team_id=team_id, email=email)
        self.db.add(agent)
        self.db.flush()
        return agent
