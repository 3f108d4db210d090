"""
Meta Messenger Providers

Facebook Messenger and Instagram Direct share the Send API (``me/messages``
with a page access token) and the ``entry[].messaging[]`` webhook shape.
"""

import logging
from collections.abc import Mapping
from typing import Any

from messaging_gateway.providers.base import (
    ConnectionResult,
    DeliveryStatus,
    HttpProviderAdapter,
    InboundMessage,
    MessageType,
    OutboundMessage,
    Platform,
    ProviderResponse,
    WebhookRequest,
    from_unix,
)
from messaging_gateway.providers.configs import FacebookConfig, InstagramConfig
from messaging_gateway.providers.meta_cloud.webhook import extract_page_id
from messaging_gateway.providers.meta_cloud.whatsapp import GRAPH_API_BASE_URL
from messaging_gateway.providers.signatures import validate_meta_signature

logger = logging.getLogger(__name__)

ATTACHMENT_TYPES = {
    MessageType.IMAGE: "image",
    MessageType.AUDIO: "audio",
    MessageType.VIDEO: "video",
    MessageType.DOCUMENT: "file",
}

INBOUND_ATTACHMENT_TYPES = {
    "image": MessageType.IMAGE,
    "audio": MessageType.AUDIO,
    "video": MessageType.VIDEO,
    "file": MessageType.DOCUMENT,
    "location": MessageType.LOCATION,
    "sticker": MessageType.STICKER,
}


class MessengerAdapter(HttpProviderAdapter):
    """Shared Send API and webhook handling for Facebook and Instagram."""

    provider = "meta"
    webhook_object = "page"

    def accepts(self, payload: dict[str, Any]) -> bool:
        return payload.get("object") == self.webhook_object

    def _build_payload(self, message: OutboundMessage) -> dict[str, Any]:
        attachment_type = ATTACHMENT_TYPES.get(message.message_type)
        if attachment_type and message.media_url:
            body: dict[str, Any] = {
                "attachment": {
                    "type": attachment_type,
                    "payload": {"url": message.media_url, "is_reusable": True},
                }
            }
        else:
            body = {"text": message.content}
        return {
            "recipient": {"id": message.to},
            "messaging_type": "RESPONSE",
            "message": body,
        }

    async def _deliver(self, config, message: OutboundMessage) -> ProviderResponse:
        data = await self._request(
            "POST",
            f"{GRAPH_API_BASE_URL}/me/messages",
            params={"access_token": config.page_access_token},
            json=self._build_payload(message),
        )
        return ProviderResponse(success=True, message_id=data.get("message_id"), raw_response=data)

    async def test_connection(self, config) -> ConnectionResult:
        async def probe() -> dict[str, Any]:
            data = await self._request(
                "GET",
                f"{GRAPH_API_BASE_URL}/{config.page_id}",
                params={"access_token": config.page_access_token, "fields": "id,name"},
            )
            return {"id": data.get("id"), "name": data.get("name")}

        return await self._check(probe())

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        return extract_page_id(payload)

    def config_identities(self, config) -> set[str]:
        return {config.page_id}

    def verify_webhook(self, config, request: WebhookRequest) -> bool:
        if not config.app_secret:
            return True
        return validate_meta_signature(request.body, request.header("X-Hub-Signature-256"), config.app_secret)

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config=None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        """
        Parse a Messenger webhook.

        Webhook format:
        {
            "object": "page" | "instagram",
            "entry": [{
                "id": "PAGE_ID",
                "time": 1700000000000,
                "messaging": [{
                    "sender": {"id": "PSID"},
                    "recipient": {"id": "PAGE_ID"},
                    "timestamp": 1700000000000,
                    "message": {"mid": "...", "text": "...", "attachments": [...]}
                }]
            }]
        }
        """
        messages: list[InboundMessage] = []
        statuses: list[DeliveryStatus] = []

        try:
            if not self.accepts(payload):
                logger.debug(f"Ignoring {self.platform.value} webhook for object {payload.get('object')}")
                return messages, statuses

            owned = self.config_identities(config) if config is not None else None

            for entry in payload.get("entry", []):
                page_id = str(entry.get("id", ""))
                if owned is not None and page_id not in owned:
                    logger.warning(
                        f"Skipping {self.platform.value} entry for a page the integration does not own",
                        extra={"page_id": page_id},
                    )
                    continue
                for event in entry.get("messaging", []):
                    if "delivery" in event:
                        statuses.extend(self._parse_delivery(event))
                        continue
                    if "read" in event:
                        continue
                    msg = self._parse_event(page_id, event)
                    if msg:
                        messages.append(msg)

        except Exception as e:
            logger.error(f"Failed to parse {self.platform.value} webhook: {e}", exc_info=True)

        return messages, statuses

    def _parse_event(self, page_id: str, event: dict[str, Any]) -> InboundMessage | None:
        sender_id = str(event.get("sender", {}).get("id", ""))
        if not sender_id or sender_id == page_id:
            return None

        # Millisecond timestamps
        raw_ts = event.get("timestamp")
        timestamp = from_unix(raw_ts / 1000 if isinstance(raw_ts, (int, float)) else raw_ts)

        if "postback" in event:
            postback = event["postback"]
            return InboundMessage(
                platform=self.platform,
                message_id=postback.get("mid"),
                sender_id=sender_id,
                recipient_id=page_id,
                content=postback.get("title") or postback.get("payload", ""),
                timestamp=timestamp,
                raw_payload=event,
            )

        message = event.get("message")
        if not message or message.get("is_echo"):
            return None

        content = message.get("text", "")
        message_type = MessageType.TEXT
        media_url = None
        attachments = message.get("attachments") or []
        if attachments:
            attachment = attachments[0]
            message_type = INBOUND_ATTACHMENT_TYPES.get(attachment.get("type"), MessageType.UNKNOWN)
            media_url = (attachment.get("payload") or {}).get("url")

        return InboundMessage(
            platform=self.platform,
            message_id=message.get("mid"),
            sender_id=sender_id,
            recipient_id=page_id,
            content=content,
            message_type=message_type,
            media_url=media_url,
            timestamp=timestamp,
            raw_payload=event,
        )

    def _parse_delivery(self, event: dict[str, Any]) -> list[DeliveryStatus]:
        delivery = event.get("delivery", {})
        raw_ts = delivery.get("watermark")
        timestamp = from_unix(raw_ts / 1000 if isinstance(raw_ts, (int, float)) else raw_ts)
        return [
            DeliveryStatus(
                message_id=mid,
                status="delivered",
                timestamp=timestamp,
                recipient_id=str(event.get("sender", {}).get("id", "")) or None,
            )
            for mid in delivery.get("mids", [])
        ]


class FacebookMessengerAdapter(MessengerAdapter):
    """Facebook Page inbox."""

    platform = Platform.FACEBOOK
    webhook_object = "page"

    def config_identities(self, config: FacebookConfig) -> set[str]:
        return {config.page_id}


class InstagramAdapter(MessengerAdapter):
    """Instagram Direct through the linked Facebook page."""

    platform = Platform.INSTAGRAM
    webhook_object = "instagram"

    def config_identities(self, config: InstagramConfig) -> set[str]:
        identities = {config.page_id}
        if config.instagram_account_id:
            identities.add(config.instagram_account_id)
        return identities
