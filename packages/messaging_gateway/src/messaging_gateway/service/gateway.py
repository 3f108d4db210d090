"""
Messaging Gateway

Entry point for outbound sends and inbound webhooks:

Outbound:
1. Resolves the tenant's active integration for the platform
2. Sends through the provider adapter
3. Records the message on the conversation (when one is given)

Inbound:
1. Picks the adapter for the payload shape and resolves the tenant (fail closed)
2. Verifies the webhook signature with the tenant's secret
3. Stores customer, conversation and message (commit)
4. Classifies and routes the conversation (commit)
5. Dispatches side effects without waiting for them
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from basecore.settings import Settings, get_settings
from messaging_gateway.contracts.event_types import MessagingEventType
from messaging_gateway.contracts.payloads import (
    AgentRequestPayload,
    ConversationStatePayload,
    DeliveryStatusPayload,
    MessageEventPayload,
)
from messaging_gateway.persistence.models import (
    Conversation,
    Customer,
    Integration,
    Message,
    MessageStatus,
)
from messaging_gateway.persistence.repo import MessagingRepository
from messaging_gateway.providers.base import (
    ConnectionResult,
    DeliveryStatus,
    InboundMessage,
    MessageType,
    OutboundMessage,
    Platform,
    ProviderResponse,
    SenderType,
    WebhookRequest,
)
from messaging_gateway.providers.configs import IntegrationConfigError, parse_integration_config
from messaging_gateway.providers.registry import ProviderRegistry
from messaging_gateway.routing.classifier import (
    ClassificationContext,
    ClassificationResult,
    MessageClassifier,
    build_classification_context,
)
from messaging_gateway.routing.conversation import ConversationRouter, routing_snapshot
from messaging_gateway.routing.tenant_resolver import TenantResolver
from messaging_gateway.service.collaborators import (
    AutoReplyTrigger,
    Broadcaster,
    ConversationStateTracker,
    StreamAutoReplyTrigger,
    StreamBroadcaster,
    StreamConversationStateTracker,
)
from messaging_gateway.service.extraction import extract_message_info
from messaging_gateway.service.integrations import IntegrationCipher
from messaging_gateway.service.side_effects import BestEffortDispatcher
from messaging_gateway.streams.producer import MessagingStreamProducer

logger = logging.getLogger(__name__)


def _message_event(message: Message) -> dict[str, Any]:
    return MessageEventPayload(
        message_id=message.id,
        conversation_id=message.conversation_id,
        customer_id=message.customer_id,
        platform=message.platform,
        direction=message.direction,
        sender_type=message.sender_type,
        content=message.content or "",
        message_type=message.message_type,
        media_url=message.media_url,
        platform_message_id=message.platform_message_id,
        created_at=message.created_at,
    ).model_dump(mode="json")


class MessagingGateway:
    """
    Orchestrates sends, inbound webhooks and connection tests.

    One gateway per database session; the registry, classifier and
    dispatcher are shared.
    """

    def __init__(
        self,
        repo: MessagingRepository,
        resolver: TenantResolver,
        registry: ProviderRegistry,
        classifier: MessageClassifier | None = None,
        router: ConversationRouter | None = None,
        dispatcher: BestEffortDispatcher | None = None,
        broadcaster: Broadcaster | None = None,
        auto_reply: AutoReplyTrigger | None = None,
        state_tracker: ConversationStateTracker | None = None,
        verify_signatures: bool = True,
        business_hours: tuple[int, int] = (9, 17),
    ):
        self.repo = repo
        self.db = repo.db
        self.resolver = resolver
        self.registry = registry
        self.classifier = classifier or MessageClassifier()
        self.router = router or ConversationRouter(repo)
        self.dispatcher = dispatcher or BestEffortDispatcher()
        self.broadcaster = broadcaster
        self.auto_reply = auto_reply
        self.state_tracker = state_tracker
        self.verify_signatures = verify_signatures
        self.business_hours = business_hours

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send_message(self, user_id: UUID, message: OutboundMessage) -> ProviderResponse:
        """
        Send a message on the tenant's active integration for its platform.

        Configuration problems come back as a failed response; nothing is
        sent without an active integration.
        """
        try:
            platform = Platform(message.platform)
        except ValueError:
            return ProviderResponse(success=False, error=f"Unsupported platform: {message.platform}")

        integration = self.resolver.resolve_for_outbound(user_id, platform)
        if integration is None:
            return ProviderResponse(
                success=False,
                error=f"No active {platform.value} integration found",
                error_code="no_integration",
            )

        adapter = self.registry.for_integration(integration)
        if adapter is None:
            return ProviderResponse(
                success=False,
                error=f"Unsupported provider: {integration.provider}",
                error_code="unsupported_provider",
            )

        try:
            config = self.resolver.open_config(integration)
        except IntegrationConfigError as e:
            logger.error(
                f"Invalid {platform.value} integration config: {e}",
                extra={"user_id": str(user_id), "integration_id": str(integration.id)},
            )
            return ProviderResponse(success=False, error=str(e), error_code="invalid_config")

        outbound = replace(message, platform=platform.value, user_id=user_id)
        response = await adapter.send_message(config, outbound)

        if response.success:
            logger.info(
                f"Sent {platform.value} message",
                extra={
                    "user_id": str(user_id),
                    "provider": integration.provider,
                    "provider_message_id": response.message_id,
                },
            )
            if message.conversation_id:
                self._record_outbound(user_id, outbound, response)
        else:
            logger.warning(
                f"Failed to send {platform.value} message: {response.error}",
                extra={"user_id": str(user_id), "error_code": response.error_code},
            )

        return response

    def _record_outbound(self, user_id: UUID, message: OutboundMessage, response: ProviderResponse) -> None:
        """Store a sent message; failures are logged, the send stands."""
        try:
            conversation = self.repo.get_conversation(user_id, UUID(str(message.conversation_id)))
            if conversation is None:
                logger.warning(
                    "Sent message references an unknown conversation",
                    extra={"user_id": str(user_id), "conversation_id": str(message.conversation_id)},
                )
                return

            stored, _ = self.repo.store_message(
                conversation,
                sender_type=message.sender_type,
                content=message.content,
                message_type=MessageType(message.message_type).value,
                platform_message_id=response.message_id,
                sender_id=message.sender_id,
                media_url=message.media_url,
                status=MessageStatus.SENT,
            )
            self.db.commit()
            event = _message_event(stored)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to record sent message: {e}", exc_info=True)
            return

        if self.broadcaster:
            self.dispatcher.dispatch(
                "broadcast_sent",
                self.broadcaster.broadcast(user_id, MessagingEventType.MESSAGE_SENT, event),
            )

    # =========================================================================
    # Inbound
    # =========================================================================

    async def handle_inbound_message(
        self,
        platform: Platform | str,
        payload: dict[str, Any],
        request: WebhookRequest | None = None,
    ) -> dict[str, Any]:
        """
        Process one webhook delivery.

        Args:
            platform: Platform of the webhook endpoint
            payload: Parsed JSON or form payload
            request: Raw request, needed for signature verification

        Returns:
            Result dict with status ignored, rejected, processed or error
        """
        try:
            platform = Platform(platform)
        except ValueError:
            return {"status": "ignored", "reason": "unsupported_platform"}

        adapter = self.registry.for_webhook(platform, payload)
        if adapter is None:
            return {"status": "ignored", "reason": "unrecognized_payload"}

        headers = request.headers if request is not None else None
        integration = self.resolver.resolve_for_inbound(platform, payload, headers, adapter)
        if integration is None:
            return {"status": "rejected", "reason": "unknown_tenant"}

        try:
            config = self.resolver.open_config(integration)
        except IntegrationConfigError as e:
            logger.error(f"Invalid integration config: {e}", extra={"integration_id": str(integration.id)})
            return {"status": "rejected", "reason": "invalid_config"}

        if self.verify_signatures and request is not None and not adapter.verify_webhook(config, request):
            logger.warning(
                f"Invalid {platform.value} webhook signature",
                extra={"integration_id": str(integration.id), "provider": adapter.provider},
            )
            return {"status": "rejected", "reason": "invalid_signature"}

        try:
            messages, statuses = adapter.parse_webhook(payload, config)
        except Exception as e:
            logger.error(f"Failed to parse {platform.value} webhook: {e}", exc_info=True)
            return {"status": "error", "reason": "parse_failed"}

        if not messages and not statuses:
            return {"status": "ignored", "reason": "no_messages", "user_id": str(integration.user_id)}

        result: dict[str, Any] = {
            "status": "processed",
            "user_id": str(integration.user_id),
            "integration_id": str(integration.id),
            "processed": 0,
            "duplicates": 0,
            "failed": 0,
            "statuses_updated": 0,
            "conversation_ids": [],
        }

        for message in messages:
            outcome, conversation_id = await self._process_message(integration, message, payload)
            result[outcome] += 1
            if conversation_id and str(conversation_id) not in result["conversation_ids"]:
                result["conversation_ids"].append(str(conversation_id))

        for status in statuses:
            if self._apply_status(integration, status):
                result["statuses_updated"] += 1

        if result["failed"] and not result["processed"] and not result["duplicates"]:
            result["status"] = "error"

        return result

    async def _process_message(
        self,
        integration: Integration,
        message: InboundMessage,
        payload: dict[str, Any],
    ) -> tuple[str, UUID | None]:
        """Returns the counter to bump and the conversation the message landed in."""
        user_id = integration.user_id
        platform = integration.platform

        if message.message_id and self.repo.is_message_processed(user_id, platform, message.message_id):
            logger.debug(f"Message {message.message_id} already processed, skipping")
            return "duplicates", None

        try:
            known = self.repo.get_customer(user_id, platform, message.sender_id)
            last_contact_at = known.last_interaction_at if known is not None else None
            customer, _ = self.repo.get_or_create_customer(
                user_id, platform, message.sender_id, message.sender_name
            )
            conversation, is_new = self.repo.get_or_create_active_conversation(customer.id, user_id, platform)
            before = None if is_new else routing_snapshot(conversation)
            previous_status = None if is_new else conversation.status

            self.router.on_customer_message(conversation)
            stored, created = self.repo.store_message(
                conversation,
                sender_type=SenderType.CUSTOMER,
                content=message.content,
                message_type=message.message_type.value,
                platform_message_id=message.message_id,
                sender_id=message.sender_id,
                media_url=message.media_url,
                timestamp=message.timestamp,
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Error storing inbound message: {e}",
                exc_info=True,
                extra={"user_id": str(user_id), "platform": platform},
            )
            return "failed", None

        if not created:
            # Concurrent redelivery won the insert
            return "duplicates", conversation.id

        logger.info(
            f"Stored inbound {platform} message",
            extra={
                "user_id": str(user_id),
                "conversation_id": str(conversation.id),
                "message_id": str(stored.id),
            },
        )

        classification = await self._classify_and_route(conversation, customer, stored, message, last_contact_at)

        self._dispatch_inbound_effects(
            integration, conversation, customer, stored, message, payload,
            classification, before, previous_status,
        )
        return "processed", conversation.id

    async def _classify_and_route(
        self,
        conversation: Conversation,
        customer: Customer,
        stored: Message,
        message: InboundMessage,
        last_contact_at: datetime | None = None,
    ) -> ClassificationResult | None:
        """Classification and routing never undo the stored message."""
        try:
            context = build_classification_context(
                self.repo,
                conversation,
                customer,
                business_hours=self.business_hours,
                last_contact_at=last_contact_at,
            )
        except Exception as e:
            logger.warning(f"Could not build classification context: {e}")
            context = ClassificationContext()

        classification = await self.classifier.classify(message.content, context)

        try:
            applied = self.router.apply_classification(conversation, stored, classification, message.timestamp)
            if applied:
                self.router.apply_routing_rules(
                    conversation, message.content, classification.category, classification.priority
                )
            if classification.escalation_recommended:
                self.router.handle_escalation(conversation, classification)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Error routing conversation: {e}",
                exc_info=True,
                extra={"conversation_id": str(conversation.id)},
            )
            return None

        return classification

    def _dispatch_inbound_effects(
        self,
        integration: Integration,
        conversation: Conversation,
        customer: Customer,
        stored: Message,
        message: InboundMessage,
        payload: dict[str, Any],
        classification: ClassificationResult | None,
        before: dict[str, Any] | None,
        previous_status: str | None,
    ) -> None:
        user_id = integration.user_id

        if self.broadcaster:
            self.dispatcher.dispatch(
                "broadcast_received",
                self.broadcaster.broadcast(user_id, MessagingEventType.MESSAGE_RECEIVED, _message_event(stored)),
            )

        if self.auto_reply:
            info = extract_message_info(integration.platform, payload)
            if info is not None and info.message_id != message.message_id:
                info = None
            request = AgentRequestPayload(
                platform=integration.platform,
                conversation_id=conversation.id,
                customer_id=customer.id,
                content=message.content,
                sender_id=(info.reply_to if info and info.reply_to else message.sender_id),
                sender_name=message.sender_name,
                classification=classification.to_dict() if classification else {},
                context={
                    "integration_id": str(integration.id),
                    "message_id": str(stored.id),
                    "customer_sender_id": message.sender_id,
                    "conversation_status": conversation.status,
                },
            )
            self.dispatcher.dispatch("auto_reply", self.auto_reply.request_reply(user_id, request))

        if self.state_tracker:
            after = routing_snapshot(conversation)
            if before != after:
                reason = "new_conversation" if before is None else "inbound_message"
                state = self._state_payload(conversation, previous_status, reason)
                self.dispatcher.dispatch("state_changed", self.state_tracker.state_changed(user_id, state))

    def _state_payload(
        self,
        conversation: Conversation,
        previous_status: str | None,
        reason: str,
    ) -> ConversationStatePayload:
        team = agent = None
        if conversation.assigned_team_id:
            team = self.repo.get_team(conversation.user_id, conversation.assigned_team_id)
        if conversation.assigned_agent_id:
            agent = self.repo.get_agent(conversation.user_id, conversation.assigned_agent_id)
        return ConversationStatePayload(
            conversation_id=conversation.id,
            status=conversation.status,
            previous_status=previous_status,
            priority=conversation.priority,
            category=conversation.category,
            assigned_team=team.name if team else None,
            assigned_agent=agent.name if agent else None,
            reason=reason,
        )

    def _apply_status(self, integration: Integration, status: DeliveryStatus) -> bool:
        """Apply a provider delivery status to the stored outbound message."""
        try:
            MessageStatus(status.status)
        except ValueError:
            logger.debug(f"Ignoring unknown delivery status '{status.status}'")
            return False

        try:
            stored = self.repo.update_message_status(
                integration.user_id,
                integration.platform,
                status.message_id,
                status.status,
                timestamp=status.timestamp,
                error_message=status.error_message,
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error applying delivery status: {e}", exc_info=True)
            return False

        if stored is None:
            return False

        if self.broadcaster:
            event = DeliveryStatusPayload(
                platform_message_id=status.message_id,
                message_id=stored.id,
                conversation_id=stored.conversation_id,
                status=stored.status,
                timestamp=status.timestamp,
                error_code=status.error_code,
                error_message=status.error_message,
            ).model_dump(mode="json")
            self.dispatcher.dispatch(
                "broadcast_status",
                self.broadcaster.broadcast(integration.user_id, MessagingEventType.DELIVERY_STATUS_UPDATED, event),
            )
        return True

    # =========================================================================
    # Connection tests
    # =========================================================================

    async def test_connection(
        self,
        platform: Platform | str,
        provider: str,
        config: dict[str, Any],
    ) -> ConnectionResult:
        """Validate a config and check its credentials against the provider."""
        try:
            typed = parse_integration_config(platform, provider, config)
        except IntegrationConfigError as e:
            return ConnectionResult(success=False, error=str(e))

        adapter = self.registry.get(typed.platform, provider)
        if adapter is None:
            return ConnectionResult(success=False, error=f"Unsupported provider: {provider}")

        return await adapter.test_connection(typed)


def create_gateway(
    db: Session,
    registry: ProviderRegistry,
    producer: MessagingStreamProducer | None = None,
    classifier: MessageClassifier | None = None,
    dispatcher: BestEffortDispatcher | None = None,
    cipher: IntegrationCipher | None = None,
    settings: Settings | None = None,
) -> MessagingGateway:
    """Wire a gateway for one session from settings."""
    settings = settings or get_settings()
    repo = MessagingRepository(db)
    cipher = cipher or IntegrationCipher(settings.MESSAGING_ENCRYPTION_KEY)

    return MessagingGateway(
        repo=repo,
        resolver=TenantResolver(repo, registry, cipher),
        registry=registry,
        classifier=classifier,
        router=ConversationRouter(repo, burst_window_seconds=settings.CLASSIFICATION_BURST_WINDOW_SECONDS),
        dispatcher=dispatcher or BestEffortDispatcher(timeout=settings.SIDE_EFFECT_TIMEOUT_SECONDS),
        broadcaster=StreamBroadcaster(producer) if producer else None,
        auto_reply=StreamAutoReplyTrigger(producer) if producer else None,
        state_tracker=StreamConversationStateTracker(producer) if producer else None,
        verify_signatures=settings.VERIFY_WEBHOOK_SIGNATURES,
        business_hours=(settings.BUSINESS_HOURS_START, settings.BUSINESS_HOURS_END),
    )
