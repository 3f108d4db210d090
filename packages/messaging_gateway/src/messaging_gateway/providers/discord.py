"""
Discord Provider

Bot messages through the REST API. Inbound messages arrive as
``MESSAGE_CREATE``-shaped payloads forwarded to the webhook endpoint.
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
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
    media_type_from_mime,
    utcnow,
)
from messaging_gateway.providers.configs import DiscordConfig

logger = logging.getLogger(__name__)

DISCORD_API_BASE_URL = "https://discord.com/api/v10"

# Interaction PING sent when the endpoint is registered
INTERACTION_PING = 1


def is_ping(payload: dict[str, Any]) -> bool:
    return payload.get("type") == INTERACTION_PING and "author" not in payload


def _parse_iso(value: str | None) -> datetime:
    if not value:
        return utcnow()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return utcnow()
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class DiscordAdapter(HttpProviderAdapter):
    """Discord bot provider."""

    platform = Platform.DISCORD
    provider = "discord"

    def _headers(self, config: DiscordConfig) -> dict[str, str]:
        return {"Authorization": f"Bot {config.bot_token}"}

    def _event(self, payload: dict[str, Any]) -> dict[str, Any]:
        # Gateway dispatch wraps the message in "d"
        return payload.get("d") if isinstance(payload.get("d"), dict) else payload

    async def _deliver(self, config: DiscordConfig, message: OutboundMessage) -> ProviderResponse:
        content = message.content
        if message.media_url and message.message_type != MessageType.TEXT:
            content = f"{content}\n{message.media_url}".strip()
        data = await self._request(
            "POST",
            f"{DISCORD_API_BASE_URL}/channels/{message.to}/messages",
            headers=self._headers(config),
            json={"content": content},
        )
        return ProviderResponse(success=True, message_id=data.get("id"), raw_response=data)

    async def test_connection(self, config: DiscordConfig) -> ConnectionResult:
        async def probe() -> dict[str, Any]:
            data = await self._request(
                "GET",
                f"{DISCORD_API_BASE_URL}/users/@me",
                headers=self._headers(config),
            )
            return {"id": data.get("id"), "username": data.get("username")}

        return await self._check(probe())

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        guild_id = self._event(payload).get("guild_id")
        return str(guild_id) if guild_id else None

    def config_identities(self, config: DiscordConfig) -> set[str]:
        return {config.guild_id}

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config: DiscordConfig | None = None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        """Parse a message-create payload. Bot authors (including ours) are skipped."""
        messages: list[InboundMessage] = []
        statuses: list[DeliveryStatus] = []

        try:
            event = self._event(payload)
            author = event.get("author") or {}
            channel_id = event.get("channel_id")
            if not author or not channel_id:
                return messages, statuses
            if author.get("bot"):
                logger.debug("Skipping Discord bot message")
                return messages, statuses

            message_type = MessageType.TEXT
            media_url = None
            attachments = event.get("attachments") or []
            if attachments:
                media_url = attachments[0].get("url")
                message_type = media_type_from_mime(attachments[0].get("content_type"))

            messages.append(
                InboundMessage(
                    platform=Platform.DISCORD,
                    message_id=str(event["id"]) if event.get("id") else None,
                    sender_id=str(channel_id),
                    sender_name=author.get("global_name") or author.get("username"),
                    recipient_id=str(event.get("guild_id") or ""),
                    content=event.get("content", ""),
                    message_type=message_type,
                    media_url=media_url,
                    timestamp=_parse_iso(event.get("timestamp")),
                    raw_payload=payload,
                )
            )
        except Exception as e:
            logger.error(f"Failed to parse Discord webhook: {e}", exc_info=True)

        return messages, statuses
