"""
Provider Adapter Base

Common message model and the abstract interface every messaging provider
implements (WhatsApp via Twilio or Meta, Telegram, Facebook, Instagram,
Slack, Discord, email, SMS, chat widget, TikTok).
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from messaging_gateway.providers.configs import IntegrationConfig

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Error from a messaging provider."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.retryable = retryable


class Platform(str, Enum):
    """Supported messaging channels."""

    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    SLACK = "slack"
    DISCORD = "discord"
    EMAIL = "email"
    SMS = "sms"
    LIVE_CHAT = "live_chat"
    WEBSITE_CHAT = "website_chat"
    TIKTOK = "tiktok"

    def __str__(self) -> str:
        return self.value


class MessageType(str, Enum):
    """Normalized message types across providers."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    LOCATION = "location"
    CONTACT = "contact"
    STICKER = "sticker"
    REACTION = "reaction"
    UNKNOWN = "unknown"


class SenderType(str, Enum):
    """Who authored a message."""

    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"
    AI_AGENT = "ai_agent"


def utcnow() -> datetime:
    """Naive UTC now, the timestamp convention used by the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(value: Any) -> datetime:
    """Convert a unix timestamp (seconds, str or number) to naive UTC."""
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return utcnow()


def media_type_from_mime(mime_type: str | None) -> MessageType:
    """Infer a message type from a MIME type (image/audio/video, otherwise document)."""
    if not mime_type:
        return MessageType.DOCUMENT
    prefix = mime_type.split("/", 1)[0].lower()
    if prefix == "image":
        return MessageType.IMAGE
    if prefix == "audio":
        return MessageType.AUDIO
    if prefix == "video":
        return MessageType.VIDEO
    return MessageType.DOCUMENT


@dataclass
class OutboundMessage:
    """A message the gateway should send on behalf of a tenant."""

    platform: str
    to: str
    content: str
    message_type: MessageType = MessageType.TEXT
    sender_type: SenderType = SenderType.AGENT
    sender_id: str | None = None
    conversation_id: Any | None = None
    media_url: str | None = None
    from_: str | None = None
    subject: str | None = None  # Email only
    session_id: str | None = None  # Chat widget session
    user_id: Any | None = None  # Owning tenant, filled in by the gateway


@dataclass
class InboundMessage:
    """
    Parsed inbound message from a webhook.

    Provider-agnostic representation of an incoming customer message.
    """

    platform: Platform
    sender_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    message_id: str | None = None
    sender_name: str | None = None
    recipient_id: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryStatus:
    """Parsed delivery status update from a webhook."""

    message_id: str
    status: str  # sent, delivered, read, failed
    timestamp: datetime = field(default_factory=utcnow)
    recipient_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass
class ProviderResponse:
    """Result of a send: ``success`` plus either a message id or an error."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.message_id:
            result["message_id"] = self.message_id
        if self.error:
            result["error"] = self.error
        if self.error_code:
            result["error_code"] = self.error_code
        return result


@dataclass
class ConnectionResult:
    """Result of a credential check."""

    success: bool
    error: str | None = None
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookRequest:
    """The HTTP details of a webhook delivery needed for signature checks."""

    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""
    form: dict[str, str] | None = None

    def header(self, name: str) -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return ""


def header_value(headers: Mapping[str, str] | None, name: str) -> str:
    """Case-insensitive lookup on a plain headers mapping."""
    if not headers:
        return ""
    return WebhookRequest(headers=headers).header(name)


class ProviderAdapter(ABC):
    """
    Abstract interface for messaging providers.

    Implementations must handle:
    - Sending a normalized message (never raising)
    - Parsing webhook payloads (never raising)
    - Validating credentials
    - Exposing the channel identity used for tenant resolution
    """

    platform: Platform
    provider: str

    @abstractmethod
    async def send_message(
        self,
        config: "IntegrationConfig",
        message: OutboundMessage,
    ) -> ProviderResponse:
        """
        Send a message.

        Args:
            config: Typed integration config for this provider
            message: Normalized outbound message

        Returns:
            ProviderResponse with the provider message ID if successful
        """
        ...

    @abstractmethod
    def parse_webhook(
        self,
        payload: dict[str, Any],
        config: "IntegrationConfig | None" = None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        """
        Parse webhook payload into messages and status updates.

        Args:
            payload: Parsed JSON (or form) webhook payload
            config: Integration config of the resolved tenant

        Returns:
            Tuple of (list of inbound messages, list of delivery statuses)
        """
        ...

    @abstractmethod
    async def test_connection(self, config: "IntegrationConfig") -> ConnectionResult:
        """Validate credentials with a lightweight provider call."""
        ...

    @abstractmethod
    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        """Channel identity (business number, page id, team id...) a webhook was sent to."""
        ...

    @abstractmethod
    def config_identities(self, config: "IntegrationConfig") -> set[str]:
        """Identities an integration owns, compared against ``webhook_identity``."""
        ...

    def accepts(self, payload: dict[str, Any]) -> bool:
        """Whether a webhook payload has this provider's shape."""
        return True

    def verify_webhook(self, config: "IntegrationConfig", request: WebhookRequest) -> bool:
        """Verify the webhook signature. Providers without signatures accept everything."""
        return True

    async def aclose(self) -> None:
        """Release transport resources."""
        return None


class HttpProviderAdapter(ProviderAdapter):
    """
    Base for providers reached over HTTP.

    Owns a lazily created ``httpx.AsyncClient`` with a bounded timeout and
    turns every transport failure into a failed ``ProviderResponse``.
    """

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Make an HTTP request and decode the JSON body.

        Raises:
            ProviderError: On timeouts, transport errors and HTTP status >= 400
        """
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError("timeout", code="timeout", retryable=True) from e
        except httpx.RequestError as e:
            # The URL may embed a bot token, so only the exception type is surfaced
            raise ProviderError(
                f"Transport error: {type(e).__name__}",
                code="transport_error",
                retryable=True,
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.status_code >= 400:
            raise ProviderError(
                self._error_message(data) or f"HTTP {response.status_code}",
                code=str(response.status_code),
                details=data,
                retryable=response.status_code >= 500,
            )
        return data

    def _error_message(self, data: dict[str, Any]) -> str | None:
        """Extract the provider's error message from an error body."""
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message")
        if isinstance(error, str):
            return error
        return data.get("message") or data.get("description")

    async def send_message(
        self,
        config: "IntegrationConfig",
        message: OutboundMessage,
    ) -> ProviderResponse:
        try:
            return await self._deliver(config, message)
        except ProviderError as e:
            logger.warning(
                f"{self.platform.value} send failed: {e.message}",
                extra={"provider": self.provider, "error_code": e.code, "retryable": e.retryable},
            )
            return ProviderResponse(
                success=False,
                error=e.message,
                error_code=e.code,
                raw_response=e.details,
            )
        except Exception as e:
            logger.error(f"Unexpected {self.platform.value} send error: {e}", exc_info=True)
            return ProviderResponse(success=False, error="Unexpected provider error", error_code="internal")

    @abstractmethod
    async def _deliver(
        self,
        config: "IntegrationConfig",
        message: OutboundMessage,
    ) -> ProviderResponse:
        """Perform the transport call. May raise ProviderError."""
        ...

    async def _check(self, probe) -> ConnectionResult:
        """Run a credential probe coroutine, mapping ProviderError to a failed result."""
        try:
            info = await probe
        except ProviderError as e:
            return ConnectionResult(success=False, error=e.message)
        except Exception as e:
            logger.error(f"Unexpected {self.platform.value} connection test error: {e}", exc_info=True)
            return ConnectionResult(success=False, error="Unexpected provider error")
        return ConnectionResult(success=True, info=info or {})
