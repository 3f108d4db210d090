"""
Telegram Bot API Provider

Messages are sent with the bot's Bot API methods. Webhooks are registered
with a per-integration ``secret_token`` that Telegram echoes back in the
``X-Telegram-Bot-Api-Secret-Token`` header; that secret is how a delivery is
attributed to a tenant, since Telegram updates carry no bot identity.
"""

import hmac
import json
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
    ProviderError,
    ProviderResponse,
    WebhookRequest,
    from_unix,
    header_value,
)
from messaging_gateway.providers.configs import TelegramConfig

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE_URL = "https://api.telegram.org"
SECRET_TOKEN_HEADER = "X-Telegram-Bot-Api-Secret-Token"

# Bot API method and media field per message type
SEND_METHODS = {
    MessageType.TEXT: ("sendMessage", None),
    MessageType.IMAGE: ("sendPhoto", "photo"),
    MessageType.VIDEO: ("sendVideo", "video"),
    MessageType.AUDIO: ("sendAudio", "audio"),
    MessageType.DOCUMENT: ("sendDocument", "document"),
    MessageType.STICKER: ("sendSticker", "sticker"),
    MessageType.LOCATION: ("sendLocation", None),
    MessageType.CONTACT: ("sendContact", None),
}


class TelegramAdapter(HttpProviderAdapter):
    """Telegram Bot API provider."""

    platform = Platform.TELEGRAM
    provider = "telegram"

    def accepts(self, payload: dict[str, Any]) -> bool:
        return "update_id" in payload

    def _method_url(self, config: TelegramConfig, method: str) -> str:
        return f"{TELEGRAM_API_BASE_URL}/bot{config.bot_token}/{method}"

    def _build_request(self, message: OutboundMessage) -> tuple[str, dict[str, Any]]:
        """Pick the Bot API method and body for a message type."""
        method, media_field = SEND_METHODS.get(message.message_type, SEND_METHODS[MessageType.TEXT])
        body: dict[str, Any] = {"chat_id": message.to}

        if message.message_type == MessageType.LOCATION:
            # Content is "lat,lng"
            try:
                latitude, longitude = (float(part) for part in message.content.split(",", 1))
            except ValueError:
                raise ProviderError("Location content must be 'latitude,longitude'", code="invalid_message")
            body.update(latitude=latitude, longitude=longitude)
        elif message.message_type == MessageType.CONTACT:
            # Content is a JSON object with phone_number and first_name
            try:
                contact = json.loads(message.content)
                body.update(phone_number=contact["phone_number"], first_name=contact["first_name"])
            except (ValueError, KeyError, TypeError):
                raise ProviderError(
                    "Contact content must be JSON with phone_number and first_name",
                    code="invalid_message",
                )
        elif media_field:
            if not message.media_url:
                method, media_field = SEND_METHODS[MessageType.TEXT]
                body["text"] = message.content
            else:
                body[media_field] = message.media_url
                if message.content and message.message_type != MessageType.STICKER:
                    body["caption"] = message.content
        else:
            body["text"] = message.content

        return method, body

    async def _deliver(self, config: TelegramConfig, message: OutboundMessage) -> ProviderResponse:
        method, body = self._build_request(message)
        data = await self._request("POST", self._method_url(config, method), json=body)
        if not data.get("ok"):
            raise ProviderError(data.get("description") or "Telegram API error", code=str(data.get("error_code", "")))
        result = data.get("result") or {}
        return ProviderResponse(
            success=True,
            message_id=str(result["message_id"]) if "message_id" in result else None,
            raw_response=data,
        )

    async def test_connection(self, config: TelegramConfig) -> ConnectionResult:
        async def probe() -> dict[str, Any]:
            data = await self._request("GET", self._method_url(config, "getMe"))
            if not data.get("ok"):
                raise ProviderError(data.get("description") or "Invalid bot token")
            bot = data.get("result") or {}
            return {"id": bot.get("id"), "username": bot.get("username")}

        return await self._check(probe())

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        return header_value(headers, SECRET_TOKEN_HEADER) or None

    def config_identities(self, config: TelegramConfig) -> set[str]:
        return {config.webhook_secret}

    def verify_webhook(self, config: TelegramConfig, request: WebhookRequest) -> bool:
        return hmac.compare_digest(request.header(SECRET_TOKEN_HEADER), config.webhook_secret)

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config: TelegramConfig | None = None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        """
        Parse a Telegram update.

        Only ``message``, ``edited_message`` and ``channel_post`` updates
        produce inbound messages. Channel posts have no ``from`` and fall back
        to the chat id.
        """
        messages: list[InboundMessage] = []
        statuses: list[DeliveryStatus] = []

        try:
            message = (
                payload.get("message") or payload.get("edited_message") or payload.get("channel_post")
            )
            if not message:
                logger.debug(f"Ignoring Telegram update {payload.get('update_id')} without message")
                return messages, statuses

            sender = message.get("from") or {}
            if sender.get("is_bot"):
                return messages, statuses

            sender_id = sender.get("id", (message.get("chat") or {}).get("id"))
            if sender_id is None:
                return messages, statuses

            name = " ".join(p for p in (sender.get("first_name"), sender.get("last_name")) if p)
            content, message_type = self._content(message)

            messages.append(
                InboundMessage(
                    platform=Platform.TELEGRAM,
                    message_id=str(message.get("message_id")) if message.get("message_id") is not None else None,
                    sender_id=str(sender_id),
                    sender_name=name or sender.get("username"),
                    content=content,
                    message_type=message_type,
                    timestamp=from_unix(message.get("date")),
                    raw_payload=payload,
                )
            )
        except Exception as e:
            logger.error(f"Failed to parse Telegram webhook: {e}", exc_info=True)

        return messages, statuses

    def _content(self, message: dict[str, Any]) -> tuple[str, MessageType]:
        if "text" in message:
            return message["text"], MessageType.TEXT
        caption = message.get("caption", "")
        if "photo" in message:
            return caption, MessageType.IMAGE
        if "video" in message:
            return caption, MessageType.VIDEO
        if "voice" in message or "audio" in message:
            return caption, MessageType.AUDIO
        if "document" in message:
            return caption, MessageType.DOCUMENT
        if "sticker" in message:
            return message["sticker"].get("emoji", ""), MessageType.STICKER
        if "location" in message:
            location = message["location"]
            return f"{location.get('latitude')},{location.get('longitude')}", MessageType.LOCATION
        if "contact" in message:
            return message["contact"].get("phone_number", ""), MessageType.CONTACT
        return caption, MessageType.UNKNOWN
