"""
Messaging Database Models

Tables owned by the messaging gateway.

Tables:
- messaging_integrations: A tenant's connection to one channel provider
- messaging_customers: External contacts, one per (tenant, platform, external id)
- messaging_conversations: Threads with a customer on one platform
- messaging_messages: All inbound/outbound messages
- messaging_routing_rules: Tenant-defined routing rules
- messaging_teams / messaging_agents: Assignment targets for routing rules
"""

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from messaging_gateway.providers.base import utcnow

MessagingBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class IntegrationStatus(str, Enum):
    """Status of an integration."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    PENDING = "pending"


class LifecycleStage(str, Enum):
    """Customer lifecycle stage."""

    LEAD = "lead"
    PROSPECT = "prospect"
    CUSTOMER = "customer"
    CHURNED = "churned"


class ConversationStatus(str, Enum):
    """Status of a conversation."""

    OPEN = "open"
    PENDING = "pending"
    ESCALATED = "escalated"
    CLOSED = "closed"


class Priority(str, Enum):
    """Conversation priority, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return list(Priority).index(self)


class Category(str, Enum):
    """Conversation category."""

    ACQUISITION = "acquisition"
    ENGAGEMENT = "engagement"
    RETENTION = "retention"
    SUPPORT = "support"
    GENERAL = "general"


class MessageDirection(str, Enum):
    """Direction of a message."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class MessagingModelMixin:
    """Common fields for all messaging models."""

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Integration(MessagingBase, MessagingModelMixin):
    """
    A tenant's connection to a channel provider.

    Identity fields (phone number id, page id, team id...) live in the public
    ``config`` so inbound webhooks can be matched without decrypting; secret
    fields are sealed in ``secrets_encrypted``.
    """

    __tablename__ = "messaging_integrations"

    platform = Column(String(30), nullable=False)
    provider = Column(String(30), nullable=False)
    name = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=IntegrationStatus.ACTIVE.value)
    config = Column(JSONType, nullable=False, default=dict)
    secrets_encrypted = Column(Text, nullable=True)
    webhook_url = Column(String(500), nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "name", name="uq_messaging_integrations_user_platform_name"),
        Index("idx_messaging_integrations_platform_status", "platform", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == IntegrationStatus.ACTIVE.value


class Customer(MessagingBase, MessagingModelMixin):
    """An external contact on one platform."""

    __tablename__ = "messaging_customers"

    platform = Column(String(30), nullable=False)
    external_id = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=True)
    lifecycle_stage = Column(String(20), nullable=False, default=LifecycleStage.LEAD.value)
    lead_score = Column(Integer, nullable=False, default=0)
    tags = Column(JSONType, nullable=False, default=list)
    meta = Column("metadata", JSONType, nullable=False, default=dict)
    last_interaction_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "external_id", name="uq_messaging_customers_identity"),
    )


class Conversation(MessagingBase, MessagingModelMixin):
    """
    A thread with a customer on one platform.

    ``active_key`` is set while the conversation is not closed; its unique
    constraint allows at most one active conversation per (customer, platform).
    """

    __tablename__ = "messaging_conversations"

    customer_id = Column(Uuid, ForeignKey("messaging_customers.id", ondelete="CASCADE"), nullable=False)
    platform = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default=ConversationStatus.OPEN.value)
    priority = Column(String(20), nullable=False, default=Priority.MEDIUM.value)
    category = Column(String(20), nullable=False, default=Category.GENERAL.value)
    assigned_team_id = Column(Uuid, ForeignKey("messaging_teams.id", ondelete="SET NULL"), nullable=True)
    assigned_agent_id = Column(Uuid, ForeignKey("messaging_agents.id", ondelete="SET NULL"), nullable=True)
    tags = Column(JSONType, nullable=False, default=list)
    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)
    last_classified_at = Column(DateTime, nullable=True)
    active_key = Column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint("active_key", name="uq_messaging_conversations_active_key"),
        Index("idx_messaging_conversations_user_status", "user_id", "status"),
        Index("idx_messaging_conversations_customer", "customer_id"),
    )


class Message(MessagingBase, MessagingModelMixin):
    """
    A message in a conversation.

    Platform message IDs are used for idempotency.
    """

    __tablename__ = "messaging_messages"

    conversation_id = Column(
        Uuid, ForeignKey("messaging_conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id = Column(Uuid, nullable=True)
    platform = Column(String(30), nullable=False)
    sender_type = Column(String(20), nullable=False)
    sender_id = Column(String(255), nullable=True)
    direction = Column(String(10), nullable=False)
    message_type = Column(String(20), nullable=False, default="text")
    content = Column(Text, nullable=True)
    media_url = Column(Text, nullable=True)
    platform_message_id = Column(String(255), nullable=True)
    classification = Column(JSONType, nullable=True)
    sentiment = Column(String(20), nullable=True)
    urgency_score = Column(Integer, nullable=True)
    intent = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=MessageStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "platform", "platform_message_id", name="uq_messaging_messages_platform_id"
        ),
        Index("idx_messaging_messages_user_created", "user_id", "created_at"),
    )


class RoutingRule(MessagingBase, MessagingModelMixin):
    """
    A tenant routing rule.

    conditions: {"keywords": [...], "category": "...", "priority": "..."}
    actions: {"priority": "...", "category": "...", "assign_to_team": "...", "assign_to_agent": "..."}
    """

    __tablename__ = "messaging_routing_rules"

    name = Column(String(100), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    conditions = Column(JSONType, nullable=False, default=dict)
    actions = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_messaging_routing_rules_user_active", "user_id", "is_active"),
    )


class Team(MessagingBase, MessagingModelMixin):
    """A group of agents conversations can be assigned to."""

    __tablename__ = "messaging_teams"

    name = Column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_messaging_teams_user_name"),
    )


class Agent(MessagingBase, MessagingModelMixin):
    """A human agent conversations can be assigned to."""

    __tablename__ = "messaging_agents"

    name = Column(String(100), nullable=False)
    team_id = Column(Uuid, ForeignKey("messaging_teams.id", ondelete="SET NULL"), nullable=True)
    email = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_messaging_agents_user_name"),
    )
