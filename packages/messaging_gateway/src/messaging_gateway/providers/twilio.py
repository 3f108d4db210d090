"""
Twilio Providers

WhatsApp and SMS through Twilio's Messages API. Both share the REST call,
the form-encoded webhook shape and the X-Twilio-Signature scheme; they only
differ in the ``whatsapp:`` address prefix.
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
    media_type_from_mime,
    utcnow,
)
from messaging_gateway.providers.configs import (
    TwilioSmsConfig,
    TwilioWhatsAppConfig,
    normalize_phone,
)
from messaging_gateway.providers.signatures import validate_twilio_signature

logger = logging.getLogger(__name__)

TWILIO_API_BASE_URL = "https://api.twilio.com/2010-04-01"

# Twilio status callback values mapped to our delivery statuses
STATUS_MAP = {
    "queued": "sent",
    "accepted": "sent",
    "sending": "sent",
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "undelivered": "failed",
    "failed": "failed",
}


def is_status_callback(payload: dict[str, Any]) -> bool:
    """Status callbacks carry MessageStatus and no inbound Body."""
    status = payload.get("MessageStatus") or payload.get("SmsStatus")
    return bool(status) and status != "received" and "Body" not in payload


class TwilioAdapter(HttpProviderAdapter):
    """Shared Twilio Messages API behavior."""

    provider = "twilio"
    address_prefix = ""

    def _address(self, number: str) -> str:
        return f"{self.address_prefix}{normalize_phone(number)}"

    def accepts(self, payload: dict[str, Any]) -> bool:
        return "MessageSid" in payload or "SmsSid" in payload or "AccountSid" in payload

    def _form_data(
        self,
        config: TwilioWhatsAppConfig | TwilioSmsConfig,
        message: OutboundMessage,
    ) -> dict[str, str]:
        data = {
            "From": self._address(message.from_ or config.phone_number),
            "To": self._address(message.to),
            "Body": message.content,
        }
        if message.message_type != MessageType.TEXT and message.media_url:
            data["MediaUrl"] = message.media_url
        return data

    async def _deliver(self, config, message: OutboundMessage) -> ProviderResponse:
        url = f"{TWILIO_API_BASE_URL}/Accounts/{config.account_sid}/Messages.json"
        data = await self._request(
            "POST",
            url,
            data=self._form_data(config, message),
            auth=(config.account_sid, config.auth_token),
        )
        return ProviderResponse(success=True, message_id=data.get("sid"), raw_response=data)

    async def test_connection(self, config) -> ConnectionResult:
        async def probe() -> dict[str, Any]:
            data = await self._request(
                "GET",
                f"{TWILIO_API_BASE_URL}/Accounts/{config.account_sid}.json",
                auth=(config.account_sid, config.auth_token),
            )
            return {"friendly_name": data.get("friendly_name"), "status": data.get("status")}

        return await self._check(probe())

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        if is_status_callback(payload):
            # Status callbacks are addressed from our number to the customer
            return normalize_phone(payload.get("From")) or None
        return normalize_phone(payload.get("To")) or None

    def config_identities(self, config) -> set[str]:
        return {normalize_phone(config.phone_number)}

    def verify_webhook(self, config, request: WebhookRequest) -> bool:
        return validate_twilio_signature(
            request.url,
            request.form or {},
            request.header("X-Twilio-Signature"),
            config.auth_token,
        )

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config=None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        """
        Parse a Twilio form webhook.

        Inbound messages carry From/To/Body/MessageSid and optional
        NumMedia/MediaUrl0/MediaContentType0. Status callbacks carry
        MessageSid/MessageStatus.
        """
        messages: list[InboundMessage] = []
        statuses: list[DeliveryStatus] = []

        try:
            if is_status_callback(payload):
                raw_status = (payload.get("MessageStatus") or payload.get("SmsStatus") or "").lower()
                statuses.append(
                    DeliveryStatus(
                        message_id=payload.get("MessageSid") or payload.get("SmsSid") or "",
                        status=STATUS_MAP.get(raw_status, "sent"),
                        recipient_id=normalize_phone(payload.get("To")),
                        error_code=payload.get("ErrorCode"),
                        error_message=payload.get("ErrorMessage"),
                    )
                )
                return messages, statuses

            sender = normalize_phone(payload.get("From"))
            if not sender:
                logger.debug("Ignoring Twilio webhook without sender")
                return messages, statuses

            if self._is_own_number(sender, config):
                logger.debug("Skipping message from own number", extra={"platform": self.platform.value})
                return messages, statuses

            message_type = MessageType.TEXT
            media_url = None
            media_mime_type = None
            try:
                num_media = int(payload.get("NumMedia") or 0)
            except ValueError:
                num_media = 0
            if num_media > 0:
                media_url = payload.get("MediaUrl0")
                media_mime_type = payload.get("MediaContentType0")
                message_type = media_type_from_mime(media_mime_type)

            messages.append(
                InboundMessage(
                    platform=self.platform,
                    message_id=payload.get("MessageSid") or payload.get("SmsSid"),
                    sender_id=sender,
                    sender_name=payload.get("ProfileName"),
                    recipient_id=normalize_phone(payload.get("To")),
                    content=payload.get("Body") or "",
                    message_type=message_type,
                    media_url=media_url,
                    media_mime_type=media_mime_type,
                    timestamp=utcnow(),
                    raw_payload=dict(payload),
                )
            )
        except Exception as e:
            logger.error(f"Failed to parse Twilio webhook: {e}", exc_info=True)

        return messages, statuses

    def _is_own_number(self, sender: str, config) -> bool:
        return False


class TwilioWhatsAppAdapter(TwilioAdapter):
    """WhatsApp via Twilio: addresses carry the ``whatsapp:`` prefix."""

    platform = Platform.WHATSAPP
    address_prefix = "whatsapp:"

    def accepts(self, payload: dict[str, Any]) -> bool:
        return super().accepts(payload) and payload.get("object") != "whatsapp_business_account"


class TwilioSmsAdapter(TwilioAdapter):
    """SMS via Twilio, optionally through a Messaging Service."""

    platform = Platform.SMS

    def _form_data(self, config: TwilioSmsConfig, message: OutboundMessage) -> dict[str, str]:
        data = super()._form_data(config, message)
        if config.messaging_service_sid:
            data.pop("From", None)
            data["MessagingServiceSid"] = config.messaging_service_sid
        return data

    def _is_own_number(self, sender: str, config) -> bool:
        return config is not None and sender == normalize_phone(config.phone_number)

