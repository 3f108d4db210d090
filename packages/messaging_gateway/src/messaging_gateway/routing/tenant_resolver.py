"""
Tenant Resolver

Resolves the owning tenant of an inbound webhook from the channel identity it
was addressed to (business number, page id, team id, inbox...), and the
active integration of a tenant for outbound sends.

Resolution fails closed: no match, an ambiguous match or a missing identity
all resolve to nothing.
"""

import logging
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from messaging_gateway.persistence.models import Integration
from messaging_gateway.persistence.repo import MessagingRepository
from messaging_gateway.providers.base import Platform, ProviderAdapter
from messaging_gateway.providers.configs import IntegrationConfig, IntegrationConfigError
from messaging_gateway.providers.registry import ProviderRegistry
from messaging_gateway.service.integrations import IntegrationCipher

logger = logging.getLogger(__name__)


class TenantResolver:
    """
    Resolves tenants and integrations.

    Inbound webhooks are matched on the specific identity the adapter
    extracts; a platform-wide "first active integration" is never used.
    """

    def __init__(
        self,
        repo: MessagingRepository,
        registry: ProviderRegistry,
        cipher: IntegrationCipher,
    ):
        self.repo = repo
        self.registry = registry
        self.cipher = cipher

    def open_config(self, integration: Integration) -> IntegrationConfig:
        """
        Typed config (public fields + decrypted secrets) of an integration.

        Raises:
            IntegrationConfigError: Invalid stored config or undecryptable secrets
        """
        return self.cipher.open_config(integration)

    def resolve_for_outbound(self, user_id: UUID, platform: Platform | str) -> Integration | None:
        """
        The active integration of a tenant for a platform.

        Returns:
            Active integration, None if the tenant has not connected the platform
        """
        platform = Platform(platform)
        integration = self.repo.get_active_integration(user_id, platform.value)
        if integration is None:
            logger.info(
                f"No active {platform.value} integration",
                extra={"user_id": str(user_id), "platform": platform.value},
            )
        return integration

    def resolve_for_inbound(
        self,
        platform: Platform | str,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None = None,
        adapter: ProviderAdapter | None = None,
    ) -> Integration | None:
        """
        Resolve the integration an inbound webhook belongs to.

        Args:
            platform: Platform of the webhook endpoint
            payload: Parsed webhook payload
            headers: Request headers (Telegram carries its identity there)
            adapter: Adapter detected for the payload, looked up if omitted

        Returns:
            The single matching active integration, None otherwise
        """
        platform = Platform(platform)
        adapter = adapter or self.registry.for_webhook(platform, payload)
        if adapter is None:
            logger.warning(f"No {platform.value} provider accepts this webhook payload")
            return None

        identity = adapter.webhook_identity(payload, headers)
        if not identity:
            logger.warning(
                f"Could not extract channel identity from {platform.value} webhook",
                extra={"platform": platform.value, "provider": adapter.provider},
            )
            return None

        matches: list[Integration] = []
        for integration in self.repo.list_active_integrations(platform.value, adapter.provider):
            try:
                config = self.open_config(integration)
            except IntegrationConfigError as e:
                logger.error(
                    f"Skipping integration with unreadable config: {e}",
                    extra={"integration_id": str(integration.id)},
                )
                continue
            if identity in adapter.config_identities(config):
                matches.append(integration)

        if not matches:
            logger.warning(
                f"No active {platform.value} integration matches the webhook identity",
                extra={"platform": platform.value, "provider": adapter.provider},
            )
            return None

        if len(matches) > 1:
            logger.error(
                f"Ambiguous {platform.value} webhook: {len(matches)} integrations share one identity",
                extra={
                    "platform": platform.value,
                    "integration_ids": [str(m.id) for m in matches],
                },
            )
            return None

        integration = matches[0]
        logger.debug(
            "Resolved tenant from webhook",
            extra={
                "platform": platform.value,
                "user_id": str(integration.user_id),
                "integration_id": str(integration.id),
            },
        )
        return integration
