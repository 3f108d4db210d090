"""
Chat Widget Providers

Live chat and website chat run on our own embeddable widget, so there is no
third-party API: outbound messages are published to the widget's Redis
stream and the widget backend posts visitor messages to the webhook.
"""

import asyncio
import hmac
import logging
from collections.abc import Mapping
from typing import Any
from uuid import UUID

import redis

from messaging_gateway.contracts.payloads import WidgetMessagePayload
from messaging_gateway.providers.base import (
    ConnectionResult,
    DeliveryStatus,
    InboundMessage,
    MessageType,
    OutboundMessage,
    Platform,
    ProviderAdapter,
    ProviderResponse,
    WebhookRequest,
    utcnow,
)
from messaging_gateway.providers.configs import LiveChatConfig
from messaging_gateway.streams.producer import MessagingStreamProducer

logger = logging.getLogger(__name__)

# Widget events that are not visitor messages
SKIPPED_EVENT_TYPES = {"typing", "typing_start", "typing_stop", "seen", "join", "leave"}
SKIPPED_SENDER_TYPES = {"agent", "ai_agent", "system", "bot"}
API_KEY_HEADER = "X-Widget-Api-Key"


class LiveChatAdapter(ProviderAdapter):
    """Live chat widget provider."""

    platform = Platform.LIVE_CHAT
    provider = "widget"

    def __init__(self, producer: MessagingStreamProducer | None = None, timeout: float = 5.0):
        self.producer = producer
        self.timeout = timeout

    async def send_message(self, config: LiveChatConfig, message: OutboundMessage) -> ProviderResponse:
        if self.producer is None:
            return ProviderResponse(success=False, error="Widget stream is not configured", error_code="config")
        if message.user_id is None:
            return ProviderResponse(success=False, error="Widget messages need an owning user", error_code="config")

        payload = WidgetMessagePayload(
            widget_id=config.widget_id,
            visitor_id=message.to,
            session_id=message.session_id,
            content=message.content,
            message_type=message.message_type.value,
            media_url=message.media_url,
            sender_type=message.sender_type.value,
        )
        try:
            msg_id = await asyncio.wait_for(
                asyncio.to_thread(
                    self.producer.publish_widget_message,
                    UUID(str(message.user_id)),
                    config.widget_id,
                    payload.model_dump(mode="json"),
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return ProviderResponse(success=False, error="timeout", error_code="timeout")
        except redis.RedisError as e:
            logger.warning(f"Widget publish failed: {type(e).__name__}", extra={"widget_id": config.widget_id})
            return ProviderResponse(success=False, error="Widget stream unavailable", error_code="stream_error")

        return ProviderResponse(success=True, message_id=msg_id)

    async def test_connection(self, config: LiveChatConfig) -> ConnectionResult:
        if not config.widget_id or not config.business_name:
            return ConnectionResult(success=False, error="widget_id and business_name are required")
        return ConnectionResult(
            success=True,
            info={"widget_id": config.widget_id, "business_name": config.business_name},
        )

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        widget_id = payload.get("widget_id")
        return str(widget_id) if widget_id else None

    def config_identities(self, config: LiveChatConfig) -> set[str]:
        return {config.widget_id}

    def verify_webhook(self, config: LiveChatConfig, request: WebhookRequest) -> bool:
        if not config.api_key:
            return True
        return hmac.compare_digest(request.header(API_KEY_HEADER), config.api_key)

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config: LiveChatConfig | None = None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        messages: list[InboundMessage] = []
        statuses: list[DeliveryStatus] = []

        try:
            if payload.get("type") in SKIPPED_EVENT_TYPES:
                return messages, statuses
            if payload.get("sender_type") in SKIPPED_SENDER_TYPES:
                return messages, statuses

            visitor_id = payload.get("visitor_id") or payload.get("session_id")
            content = payload.get("content") or payload.get("message") or ""
            if not visitor_id or not content:
                logger.debug("Ignoring widget event without visitor or content")
                return messages, statuses

            messages.append(
                InboundMessage(
                    platform=self.platform,
                    message_id=payload.get("message_id"),
                    sender_id=str(visitor_id),
                    sender_name=payload.get("visitor_name"),
                    recipient_id=payload.get("widget_id"),
                    content=content,
                    message_type=MessageType.TEXT,
                    timestamp=utcnow(),
                    raw_payload=dict(payload),
                )
            )
        except Exception as e:
            logger.error(f"Failed to parse widget webhook: {e}", exc_info=True)

        return messages, statuses


class WebsiteChatAdapter(LiveChatAdapter):
    """Website chat: the same widget embedded as a site chat bubble."""

    platform = Platform.WEBSITE_CHAT
