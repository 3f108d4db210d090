"""Meta Graph API providers: WhatsApp Cloud, Facebook Messenger and Instagram."""

from messaging_gateway.providers.meta_cloud.messenger import (
    FacebookMessengerAdapter,
    InstagramAdapter,
)
from messaging_gateway.providers.meta_cloud.whatsapp import MetaWhatsAppAdapter

__all__ = [
    "MetaWhatsAppAdapter",
    "FacebookMessengerAdapter",
    "InstagramAdapter",
]
