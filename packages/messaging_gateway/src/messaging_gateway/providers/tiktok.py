"""TikTok provider placeholder. TikTok messaging is not available yet."""

import logging
from collections.abc import Mapping
from typing import Any

from messaging_gateway.providers.base import (
    ConnectionResult,
    DeliveryStatus,
    InboundMessage,
    OutboundMessage,
    Platform,
    ProviderAdapter,
    ProviderResponse,
)
from messaging_gateway.providers.configs import TikTokConfig

logger = logging.getLogger(__name__)

NOT_SUPPORTED = "TikTok messaging is not supported yet"


class TikTokAdapter(ProviderAdapter):
    platform = Platform.TIKTOK
    provider = "tiktok"

    async def send_message(self, config: TikTokConfig, message: OutboundMessage) -> ProviderResponse:
        logger.info("TikTok send requested", extra={"platform": self.platform.value})
        return ProviderResponse(success=False, error=NOT_SUPPORTED, error_code="not_supported")

    async def test_connection(self, config: TikTokConfig) -> ConnectionResult:
        return ConnectionResult(success=False, error=NOT_SUPPORTED)

    def parse_webhook(
        self,
        payload: dict[str, Any],
        config: TikTokConfig | None = None,
    ) -> tuple[list[InboundMessage], list[DeliveryStatus]]:
        return [], []

    def webhook_identity(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> str | None:
        return None

    def config_identities(self, config: TikTokConfig) -> set[str]:
        return set()
