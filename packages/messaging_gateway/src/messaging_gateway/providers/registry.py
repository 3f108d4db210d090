"""
Provider Registry

Static map of adapters keyed by (platform, provider), built once at startup.
"""

import logging
from typing import Any

from messaging_gateway.providers.base import Platform, ProviderAdapter
from messaging_gateway.providers.discord import DiscordAdapter
from messaging_gateway.providers.email import EmailAdapter
from messaging_gateway.providers.meta_cloud import (
    FacebookMessengerAdapter,
    InstagramAdapter,
    MetaWhatsAppAdapter,
)
from messaging_gateway.providers.slack import SlackAdapter
from messaging_gateway.providers.telegram import TelegramAdapter
from messaging_gateway.providers.tiktok import TikTokAdapter
from messaging_gateway.providers.twilio import TwilioSmsAdapter, TwilioWhatsAppAdapter
from messaging_gateway.providers.widget import LiveChatAdapter, WebsiteChatAdapter
from messaging_gateway.streams.producer import MessagingStreamProducer

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Lookup of provider adapters by platform and provider name."""

    def __init__(self, adapters: list[ProviderAdapter] | None = None):
        self._adapters: dict[tuple[Platform, str], ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[(adapter.platform, adapter.provider)] = adapter

    def get(self, platform: Platform | str, provider: str) -> ProviderAdapter | None:
        try:
            platform = Platform(platform)
        except ValueError:
            return None
        return self._adapters.get((platform, provider))

    def for_integration(self, integration: Any) -> ProviderAdapter | None:
        """Adapter for a stored integration's (platform, provider)."""
        return self.get(integration.platform, integration.provider)

    def adapters(self, platform: Platform | str) -> list[ProviderAdapter]:
        """All adapters registered for a platform, in registration order."""
        try:
            platform = Platform(platform)
        except ValueError:
            return []
        return [adapter for (p, _), adapter in self._adapters.items() if p == platform]

    def for_webhook(self, platform: Platform | str, payload: dict[str, Any]) -> ProviderAdapter | None:
        """First adapter of the platform whose payload shape matches."""
        for adapter in self.adapters(platform):
            if adapter.accepts(payload):
                return adapter
        return None

    async def aclose(self) -> None:
        """Close transport resources of every adapter."""
        for adapter in self._adapters.values():
            try:
                await adapter.aclose()
            except Exception as e:
                logger.warning(f"Failed to close {adapter.platform.value}/{adapter.provider}: {e}")


def build_default_registry(
    producer: MessagingStreamProducer | None = None,
    timeout: float = 15.0,
) -> ProviderRegistry:
    """Registry with every supported provider."""
    return ProviderRegistry(
        [
            MetaWhatsAppAdapter(timeout=timeout),
            TwilioWhatsAppAdapter(timeout=timeout),
            TelegramAdapter(timeout=timeout),
            FacebookMessengerAdapter(timeout=timeout),
            InstagramAdapter(timeout=timeout),
            SlackAdapter(timeout=timeout),
            DiscordAdapter(timeout=timeout),
            EmailAdapter(timeout=timeout),
            TwilioSmsAdapter(timeout=timeout),
            LiveChatAdapter(producer=producer),
            WebsiteChatAdapter(producer=producer),
            TikTokAdapter(),
        ]
    )
