"""
Integration Management

Connect, list, deactivate and remove a tenant's channel integrations.
Secret config fields are sealed with Fernet before they reach the database.
"""

import json
import logging
from typing import Any
from uuid import UUID

from cryptography.fernet import Fernet, InvalidToken

from messaging_gateway.persistence.models import Integration, IntegrationStatus
from messaging_gateway.persistence.repo import MessagingRepository
from messaging_gateway.providers.base import Platform
from messaging_gateway.providers.configs import (
    IntegrationConfig,
    IntegrationConfigError,
    parse_integration_config,
)

logger = logging.getLogger(__name__)


class IntegrationCipher:
    """
    Seals and opens the secret half of an integration config.

    Without a key secrets are stored as plain JSON (local development only).
    """

    def __init__(self, key: str | None = None):
        self._fernet = Fernet(key.encode()) if key else None
        if self._fernet is None:
            logger.warning("MESSAGING_ENCRYPTION_KEY not set; integration secrets are stored unencrypted")

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def seal(self, secrets: dict[str, Any]) -> str | None:
        if not secrets:
            return None
        data = json.dumps(secrets, sort_keys=True)
        if self._fernet is None:
            return data
        return self._fernet.encrypt(data.encode()).decode()

    def open(self, sealed: str | None) -> dict[str, Any]:
        """
        Recover the secret fields.

        Raises:
            IntegrationConfigError: Secrets cannot be decrypted with this key
        """
        if not sealed:
            return {}
        if self._fernet is None:
            try:
                return json.loads(sealed)
            except ValueError:
                raise IntegrationConfigError("Integration secrets are encrypted but no key is configured")
        try:
            return json.loads(self._fernet.decrypt(sealed.encode()).decode())
        except (InvalidToken, ValueError):
            raise IntegrationConfigError("Failed to decrypt integration secrets")

    def open_config(self, integration: Integration) -> IntegrationConfig:
        """Rebuild the typed config of a stored integration."""
        data = dict(integration.config or {})
        data.update(self.open(integration.secrets_encrypted))
        return parse_integration_config(integration.platform, integration.provider, data)


class IntegrationService:
    """Integration lifecycle for one tenant at a time."""

    def __init__(self, repo: MessagingRepository, cipher: IntegrationCipher):
        self.repo = repo
        self.cipher = cipher

    def upsert(
        self,
        user_id: UUID,
        platform: Platform | str,
        provider: str,
        name: str,
        config: dict[str, Any],
        status: IntegrationStatus | str = IntegrationStatus.ACTIVE,
        webhook_url: str | None = None,
    ) -> tuple[Integration, bool]:
        """
        Validate, seal and save an integration.

        Activating an integration deactivates the tenant's other active
        integrations on the same platform.

        Raises:
            IntegrationConfigError: Unknown platform/provider or invalid config
        """
        typed = parse_integration_config(platform, provider, config)
        status = IntegrationStatus(status)
        platform_value = typed.platform.value

        integration, created = self.repo.upsert_integration(
            user_id=user_id,
            platform=platform_value,
            provider=provider,
            name=name,
            config=typed.public_dict(),
            secrets_encrypted=self.cipher.seal(typed.secret_dict()),
            status=status.value,
            webhook_url=webhook_url,
        )

        if status == IntegrationStatus.ACTIVE:
            replaced = self.repo.deactivate_other_integrations(user_id, platform_value, integration.id)
            if replaced:
                logger.info(
                    f"Deactivated {replaced} replaced {platform_value} integration(s)",
                    extra={"user_id": str(user_id), "platform": platform_value},
                )

        logger.info(
            f"{'Created' if created else 'Updated'} {platform_value}/{provider} integration",
            extra={"user_id": str(user_id), "integration_id": str(integration.id)},
        )
        return integration, created

    def list(self, user_id: UUID, platform: str | None = None) -> list[Integration]:
        return self.repo.list_integrations(user_id, platform)

    def deactivate(self, user_id: UUID, integration_id: UUID) -> Integration | None:
        integration = self.repo.get_integration(user_id, integration_id)
        if integration is None:
            return None
        self.repo.set_integration_status(integration, IntegrationStatus.INACTIVE)
        return integration

    def delete(self, user_id: UUID, integration_id: UUID) -> bool:
        deleted = self.repo.delete_integration(user_id, integration_id)
        if deleted:
            logger.info(
                "Deleted integration",
                extra={"user_id": str(user_id), "integration_id": str(integration_id)},
            )
        return deleted
