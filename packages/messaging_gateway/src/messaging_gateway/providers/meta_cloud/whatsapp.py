"""
Meta Cloud API WhatsApp Provider

WhatsApp Business Cloud API over the Graph API v18.0.
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
from messaging_gateway.providers.configs import MetaWhatsAppConfig
from messaging_gateway.providers.meta_cloud.webhook import (
    change_phone_number_id,
    extract_phone_number_id,
    is_whatsapp_business_webhook,
)
from messaging_gateway.providers.signatures import validate_meta_signature

logger = logging.getLogger(__name__)

# Meta Graph API configuration
GRAPH_API_VERSION = "v18.0"
GRAPH_API_BASE_URL = f"https://graph.facebook.com/{GRAPH_API_VERSION}"

MEDIA_TYPES = {
    MessageType.IMAGE: "image",
    MessageType.AUDIO: "audio",
    MessageType.VIDEO: "video",
    MessageType.DOCUMENT: "document",
    MessageType.STICKER: "sticker",
}


class MetaWhatsAppAdapter(HttpProviderAdapter):
    """
    Meta Cloud API provider for WhatsApp Business.

    Uses the Graph API to send messages and handle webhooks.
    """

    platform = Platform.WHATSAPP
    provider = "meta"

    def accepts(self, payload: dict[str, Any]) -> bool:
        return is_whatsapp_business_webhook(payload)

    def _build_payload(self, message: OutboundMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": message.to,
        }
        media_type = MEDIA_TYPES.get(message.message_type)
        if media_type and message.media_url:
            media: dict[str, Any] = {"link": message.media_url}
            if message.content and media_type != "sticker":
                media["caption"] = message.content
            payload["type"] = media_type
            payload[media_type] = media
        else:
            payload["type"] = "text"
            payload["text"] = {"body": message.content}
        return payload

    async def _deliver(self, config: MetaWhatsAppConfig, message: OutboundMessage) -> ProviderResponse:
        data = await self._request(
            "POST",
            f"{GRAPH_API_BASE_URL}/{config.phone_number_id}/messages",
            headers={"Authorization": f"Bearer {config.access_token}"},
            json=self._build_payload(message),
        )
        sent = data.get("messages") or [{}]
        return ProviderResponse(success=True, message_id=sent[0].get("id"), raw_response=data)

    async def test_connection(self, config: MetaWhatsAppConfig) -> ConnectionResult:
        async def probe() -> dict[str, Any]:
            data = await self._request(
                "GET",
                f"{GRAPH_API_BASE_URL}/{config.business_account_id}",
                headers={"Authorization": f"Bearer {config.access_token}"},
            )
            return {"id": data.get("id"), "name": data.get("name")}

        return await self._check(probe())

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        return extract_phone_number_id(payload)

    def config_identities(self, config: MetaWhatsAppConfig) -> set[str]:
        return {config.phone_number_id}

    def verify_webhook(self, config: MetaWhatsAppConfig, request: WebhookRequest) -> bool:
        if not config.app_secret:
            return True
        return validate_meta_signature(request.body, request.header("X-Hub-Signature-256"), config.app_secret)

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config: MetaWhatsAppConfig | None = None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        """
        Parse Meta webhook payload into messages and status updates.

        Webhook format:
        {
            "object": "whatsapp_business_account",
            "entry": [{
                "id": "WABA_ID",
                "changes": [{
                    "value": {
                        "metadata": {"display_phone_number": "...", "phone_number_id": "..."},
                        "contacts": [...],
                        "messages": [...],
                        "statuses": [...]
                    },
                    "field": "messages"
                }]
            }]
        }
        """
        messages: list[InboundMessage] = []
        statuses: list[DeliveryStatus] = []

        try:
            if not is_whatsapp_business_webhook(payload):
                logger.debug(f"Ignoring non-WhatsApp webhook: {payload.get('object')}")
                return messages, statuses

            owned = self.config_identities(config) if config is not None else None

            for entry in payload.get("entry", []):
                for change in entry.get("changes", []):
                    if change.get("field", "messages") != "messages":
                        continue
                    if owned is not None and change_phone_number_id(change) not in owned:
                        logger.warning(
                            "Skipping WhatsApp Cloud change for a phone number the integration does not own",
                            extra={"phone_number_id": change_phone_number_id(change)},
                        )
                        continue

                    value = change.get("value", {})
                    metadata = value.get("metadata", {})
                    contacts = {c.get("wa_id"): c for c in value.get("contacts", [])}

                    for msg_data in value.get("messages", []):
                        msg = self._parse_message(metadata, contacts, msg_data)
                        if msg:
                            messages.append(msg)

                    for status_data in value.get("statuses", []):
                        status = self._parse_status(status_data)
                        if status:
                            statuses.append(status)

        except Exception as e:
            logger.error(f"Failed to parse webhook payload: {e}", exc_info=True)

        return messages, statuses

    def _parse_message(
        self,
        metadata: dict[str, Any],
        contacts: dict[str, dict[str, Any]],
        msg_data: dict[str, Any],
    ) -> InboundMessage | None:
        """Parse a single message from webhook."""
        type_str = msg_data.get("type", "unknown")
        message_type = self._map_message_type(type_str)
        sender = msg_data.get("from", "")
        if not sender:
            return None

        content = ""
        media_mime_type = None
        if type_str == "text":
            content = msg_data.get("text", {}).get("body", "")
        elif message_type in MEDIA_TYPES:
            media = msg_data.get(type_str, {})
            content = media.get("caption", "")
            media_mime_type = media.get("mime_type")
        elif type_str == "interactive":
            interactive = msg_data.get("interactive", {})
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            content = reply.get("title", "")
        elif type_str == "button":
            content = msg_data.get("button", {}).get("text", "")
        elif type_str == "location":
            location = msg_data.get("location", {})
            content = location.get("name") or f"{location.get('latitude')},{location.get('longitude')}"
        elif type_str == "reaction":
            content = msg_data.get("reaction", {}).get("emoji", "")

        contact = contacts.get(sender) or next(iter(contacts.values()), {})

        return InboundMessage(
            platform=Platform.WHATSAPP,
            message_id=msg_data.get("id"),
            sender_id=sender,
            sender_name=contact.get("profile", {}).get("name"),
            recipient_id=metadata.get("phone_number_id"),
            content=content,
            message_type=message_type,
            media_mime_type=media_mime_type,
            timestamp=from_unix(msg_data.get("timestamp")),
            raw_payload=msg_data,
        )

    def _parse_status(self, status_data: dict[str, Any]) -> DeliveryStatus | None:
        """Parse a single status update from webhook."""
        if not status_data.get("id"):
            return None

        error_code = None
        error_message = None
        errors = status_data.get("errors", [])
        if errors:
            error_code = str(errors[0].get("code", ""))
            error_message = errors[0].get("message") or errors[0].get("title")

        return DeliveryStatus(
            message_id=status_data["id"],
            status=status_data.get("status", ""),
            timestamp=from_unix(status_data.get("timestamp")),
            recipient_id=status_data.get("recipient_id"),
            error_code=error_code,
            error_message=error_message,
        )

    def _map_message_type(self, type_str: str) -> MessageType:
        """Map Meta message type string to MessageType enum."""
        mapping = {
            "text": MessageType.TEXT,
            "image": MessageType.IMAGE,
            "video": MessageType.VIDEO,
            "audio": MessageType.AUDIO,
            "voice": MessageType.AUDIO,
            "document": MessageType.DOCUMENT,
            "sticker": MessageType.STICKER,
            "location": MessageType.LOCATION,
            "contacts": MessageType.CONTACT,
            "interactive": MessageType.TEXT,
            "button": MessageType.TEXT,
            "reaction": MessageType.REACTION,
        }
        return mapping.get(type_str, MessageType.UNKNOWN)
