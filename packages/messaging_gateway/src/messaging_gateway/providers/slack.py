"""
Slack Provider

Bot messages through ``chat.postMessage``; inbound messages through the
Events API. Slack answers 200 with ``ok: false`` on API errors, so the body
is checked on every call.
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
    ProviderError,
    ProviderResponse,
    WebhookRequest,
    from_unix,
)
from messaging_gateway.providers.configs import SlackConfig
from messaging_gateway.providers.signatures import validate_slack_signature

logger = logging.getLogger(__name__)

SLACK_API_BASE_URL = "https://slack.com/api"

# Message subtypes that are not customer messages
IGNORED_SUBTYPES = {"bot_message", "message_changed", "message_deleted", "channel_join", "channel_leave"}


def is_url_verification(payload: dict[str, Any]) -> bool:
    return payload.get("type") == "url_verification"


class SlackAdapter(HttpProviderAdapter):
    """Slack Web API + Events API provider."""

    platform = Platform.SLACK
    provider = "slack"

    def accepts(self, payload: dict[str, Any]) -> bool:
        return payload.get("type") in ("event_callback", "url_verification")

    async def _api(self, config: SlackConfig, method: str, **kwargs: Any) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"{SLACK_API_BASE_URL}/{method}",
            headers={"Authorization": f"Bearer {config.bot_token}"},
            **kwargs,
        )
        if not data.get("ok"):
            raise ProviderError(data.get("error") or "Slack API error", code=data.get("error"))
        return data

    async def _deliver(self, config: SlackConfig, message: OutboundMessage) -> ProviderResponse:
        channel = message.to or config.default_channel
        if not channel:
            raise ProviderError("No Slack channel to send to", code="invalid_message")

        body: dict[str, Any] = {"channel": channel, "text": message.content}
        if message.media_url and message.message_type != MessageType.TEXT:
            body["text"] = f"{message.content}\n{message.media_url}".strip()

        data = await self._api(config, "chat.postMessage", json=body)
        return ProviderResponse(success=True, message_id=data.get("ts"), raw_response=data)

    async def test_connection(self, config: SlackConfig) -> ConnectionResult:
        async def probe() -> dict[str, Any]:
            data = await self._api(config, "auth.test")
            return {"team": data.get("team"), "team_id": data.get("team_id"), "user": data.get("user")}

        return await self._check(probe())

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        team_id = payload.get("team_id") or (payload.get("event") or {}).get("team")
        return str(team_id) if team_id else None

    def config_identities(self, config: SlackConfig) -> set[str]:
        return {config.team_id}

    def verify_webhook(self, config: SlackConfig, request: WebhookRequest) -> bool:
        if not config.signing_secret:
            return True
        return validate_slack_signature(
            request.body,
            request.header("X-Slack-Request-Timestamp"),
            request.header("X-Slack-Signature"),
            config.signing_secret,
        )

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config: SlackConfig | None = None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        """
        Parse an Events API ``event_callback``.

        Only plain ``message`` events from users become inbound messages. The
        sender identity is the channel, which is where replies are posted.
        """
        messages: list[InboundMessage] = []
        statuses: list[DeliveryStatus] = []

        try:
            if payload.get("type") != "event_callback":
                return messages, statuses

            event = payload.get("event") or {}
            if event.get("type") != "message":
                return messages, statuses
            if event.get("bot_id") or event.get("subtype") in IGNORED_SUBTYPES:
                logger.debug("Skipping Slack bot or system message")
                return messages, statuses

            channel = event.get("channel")
            if not channel:
                return messages, statuses

            message_type = MessageType.TEXT
            media_url = None
            files = event.get("files") or []
            if files:
                media_url = files[0].get("url_private")
                mimetype = files[0].get("mimetype") or ""
                message_type = MessageType.IMAGE if mimetype.startswith("image/") else MessageType.DOCUMENT

            messages.append(
                InboundMessage(
                    platform=Platform.SLACK,
                    message_id=event.get("client_msg_id") or event.get("ts"),
                    sender_id=str(channel),
                    sender_name=event.get("user"),
                    recipient_id=payload.get("team_id"),
                    content=event.get("text", ""),
                    message_type=message_type,
                    media_url=media_url,
                    timestamp=from_unix(event.get("ts")),
                    raw_payload=payload,
                )
            )
        except Exception as e:
            logger.error(f"Failed to parse Slack webhook: {e}", exc_info=True)

        return messages, statuses
