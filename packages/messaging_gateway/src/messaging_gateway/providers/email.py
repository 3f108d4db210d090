"""
Email Provider

Outbound mail over SMTP with an app password; inbound mail arrives as an
inbound-parse webhook (``from``, ``to``, ``subject``, ``text``,
``message_id``). ``smtplib`` is blocking, so every SMTP session runs in a
worker thread under a bounded timeout.
"""

import asyncio
import logging
import smtplib
import ssl
from collections.abc import Mapping
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr
from typing import Any

from messaging_gateway.providers.base import (
    ConnectionResult,
    DeliveryStatus,
    InboundMessage,
    MessageType,
    OutboundMessage,
    Platform,
    ProviderAdapter,
    ProviderResponse,
    utcnow,
)
from messaging_gateway.providers.configs import EmailConfig

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "New message"


def _address(value: str | None) -> str:
    return parseaddr(value or "")[1].strip().lower()


class EmailAdapter(ProviderAdapter):
    """SMTP email provider."""

    platform = Platform.EMAIL
    provider = "smtp"

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout

    def _connect(self, config: EmailConfig) -> smtplib.SMTP:
        """Open an authenticated SMTP session (SSL on 465, STARTTLS otherwise)."""
        context = ssl.create_default_context()
        if config.smtp_port == 465:
            smtp: smtplib.SMTP = smtplib.SMTP_SSL(
                config.smtp_host, config.smtp_port, timeout=self.timeout, context=context
            )
        else:
            smtp = smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=self.timeout)
            smtp.starttls(context=context)
        smtp.login(config.email, config.app_password)
        return smtp

    def _build_email(self, config: EmailConfig, message: OutboundMessage) -> EmailMessage:
        email = EmailMessage()
        sender = config.email
        if config.display_name:
            sender = f"{config.display_name} <{config.email}>"
        email["From"] = sender
        email["To"] = message.to
        email["Subject"] = message.subject or DEFAULT_SUBJECT
        email["Message-ID"] = make_msgid(domain=config.email.split("@", 1)[1])
        body = message.content
        if message.media_url and message.message_type != MessageType.TEXT:
            body = f"{body}\n\n{message.media_url}".strip()
        email.set_content(body)
        return email

    def _send_sync(self, config: EmailConfig, email: EmailMessage) -> None:
        with self._connect(config) as smtp:
            smtp.send_message(email)

    def _login_sync(self, config: EmailConfig) -> None:
        with self._connect(config):
            pass

    async def _run(self, func, *args) -> None:
        await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)

    async def send_message(self, config: EmailConfig, message: OutboundMessage) -> ProviderResponse:
        try:
            email = self._build_email(config, message)
        except ValueError as e:
            # Header values with CR/LF are refused by the email policy
            logger.warning(f"Refusing email with invalid headers: {e}")
            return ProviderResponse(success=False, error="Invalid email headers", error_code="invalid_message")

        try:
            await self._run(self._send_sync, config, email)
        except asyncio.TimeoutError:
            logger.warning("Email send timed out", extra={"smtp_host": config.smtp_host})
            return ProviderResponse(success=False, error="timeout", error_code="timeout")
        except smtplib.SMTPAuthenticationError:
            return ProviderResponse(success=False, error="SMTP authentication failed", error_code="auth")
        except smtplib.SMTPRecipientsRefused:
            return ProviderResponse(success=False, error="Recipient refused", error_code="recipient")
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Email send failed: {type(e).__name__}", extra={"smtp_host": config.smtp_host})
            return ProviderResponse(success=False, error=f"SMTP error: {type(e).__name__}", error_code="smtp")
        return ProviderResponse(success=True, message_id=email["Message-ID"])

    async def test_connection(self, config: EmailConfig) -> ConnectionResult:
        try:
            await self._run(self._login_sync, config)
        except asyncio.TimeoutError:
            return ConnectionResult(success=False, error="timeout")
        except smtplib.SMTPAuthenticationError:
            return ConnectionResult(success=False, error="SMTP authentication failed")
        except (smtplib.SMTPException, OSError) as e:
            return ConnectionResult(success=False, error=f"SMTP error: {type(e).__name__}")
        return ConnectionResult(success=True, info={"email": config.email, "smtp_host": config.smtp_host})

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        return _address(payload.get("to")) or None

    def config_identities(self, config: EmailConfig) -> set[str]:
        return {config.email}

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config: EmailConfig | None = None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        messages: list[InboundMessage] = []
        statuses: list[DeliveryStatus] = []

        try:
            sender = _address(payload.get("from"))
            if not sender:
                logger.debug("Ignoring inbound email without sender")
                return messages, statuses
            if config is not None and sender == config.email:
                return messages, statuses

            subject = payload.get("subject") or ""
            text = payload.get("text") or payload.get("html") or ""
            name = parseaddr(payload.get("from") or "")[0] or None

            messages.append(
                InboundMessage(
                    platform=Platform.EMAIL,
                    message_id=payload.get("message_id") or payload.get("Message-Id"),
                    sender_id=sender,
                    sender_name=name,
                    recipient_id=_address(payload.get("to")) or None,
                    content=f"{subject}\n\n{text}".strip() if subject else text,
                    message_type=MessageType.TEXT,
                    timestamp=utcnow(),
                    raw_payload=dict(payload),
                )
            )
        except Exception as e:
            logger.error(f"Failed to parse inbound email: {e}", exc_info=True)

        return messages, statuses
