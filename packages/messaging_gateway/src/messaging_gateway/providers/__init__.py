"""
Messaging Providers

Adapter implementations for every supported channel: WhatsApp (Meta Cloud
API and Twilio), Telegram, Facebook Messenger, Instagram, Slack, Discord,
SMTP email, Twilio SMS, the chat widget, and a TikTok placeholder.
"""

from messaging_gateway.providers.base import (
    ConnectionResult,
    DeliveryStatus,
    InboundMessage,
    MessageType,
    OutboundMessage,
    Platform,
    ProviderAdapter,
    ProviderError,
    ProviderResponse,
    SenderType,
    WebhookRequest,
)

__all__ = [
    "ProviderAdapter",
    "ProviderResponse",
    "ProviderError",
    "ConnectionResult",
    "InboundMessage",
    "OutboundMessage",
    "DeliveryStatus",
    "WebhookRequest",
    "Platform",
    "MessageType",
    "SenderType",
]
