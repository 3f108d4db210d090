"""
Tests for typed integration configs and integration management.
"""

import json

import pytest
from cryptography.fernet import Fernet

from messaging_gateway.persistence.models import IntegrationStatus
from messaging_gateway.providers.base import Platform
from messaging_gateway.providers.configs import (
    IntegrationConfigError,
    MetaWhatsAppConfig,
    TwilioWhatsAppConfig,
    default_provider,
    parse_integration_config,
)
from messaging_gateway.service.integrations import IntegrationCipher

from conftest import META_WHATSAPP_CONFIG, TWILIO_WHATSAPP_CONFIG


class TestParseIntegrationConfig:
    """Tests for parse_integration_config."""

    def test_twilio_whatsapp_strips_channel_prefix(self):
        """Test the whatsapp: prefix is removed from the business number."""
        config = parse_integration_config("whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)

        assert isinstance(config, TwilioWhatsAppConfig)
        assert config.phone_number == "+14155238886"

    def test_meta_whatsapp(self):
        """Test Meta WhatsApp config."""
        config = parse_integration_config(Platform.WHATSAPP, "meta", META_WHATSAPP_CONFIG)

        assert isinstance(config, MetaWhatsAppConfig)
        assert config.phone_number_id == "PHONE_123"
        assert config.app_secret is None

    def test_missing_field_is_reported(self):
        """Test a missing credential is reported at construction time."""
        with pytest.raises(IntegrationConfigError) as exc:
            parse_integration_config("whatsapp", "twilio", {"account_sid": "AC123"})

        assert "auth_token" in str(exc.value)
        assert "phone_number" in str(exc.value)

    def test_unknown_platform(self):
        """Test unknown platform."""
        with pytest.raises(IntegrationConfigError, match="Unsupported platform"):
            parse_integration_config("myspace", "x", {})

    def test_unknown_provider(self):
        """Test unknown provider for a known platform."""
        with pytest.raises(IntegrationConfigError, match="Unsupported provider"):
            parse_integration_config("whatsapp", "evolution", {})

    def test_email_is_lowercased_and_validated(self):
        """Test email address normalization."""
        config = parse_integration_config(
            "email",
            "smtp",
            {"email": "Support@Example.COM", "app_password": "pw", "smtp_host": "smtp.example.com"},
        )
        assert config.email == "support@example.com"
        assert config.smtp_port == 587

        with pytest.raises(IntegrationConfigError):
            parse_integration_config(
                "email", "smtp", {"email": "not-an-address", "app_password": "pw", "smtp_host": "h"}
            )

    def test_public_and_secret_split(self):
        """Test secrets are kept out of the public half."""
        config = parse_integration_config("whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)

        assert config.public_dict() == {"account_sid": "AC123", "phone_number": "+14155238886"}
        assert config.secret_dict() == {"auth_token": "twilio_token"}

    def test_default_provider(self):
        """Test the provider used when none is named."""
        assert default_provider("whatsapp") == "twilio"
        assert default_provider("telegram") == "telegram"
        assert default_provider("live_chat") == "widget"
        assert default_provider("email") == "smtp"

        with pytest.raises(IntegrationConfigError):
            default_provider("fax")


class TestIntegrationCipher:
    """Tests for secret sealing."""

    def test_seal_and_open(self):
        """Test sealed secrets are not readable without the key."""
        cipher = IntegrationCipher(Fernet.generate_key().decode())
        sealed = cipher.seal({"auth_token": "secret"})

        assert "secret" not in sealed
        assert cipher.open(sealed) == {"auth_token": "secret"}

    def test_wrong_key(self):
        """Test opening with another key fails with a config error."""
        sealed = IntegrationCipher(Fernet.generate_key().decode()).seal({"auth_token": "secret"})

        with pytest.raises(IntegrationConfigError):
            IntegrationCipher(Fernet.generate_key().decode()).open(sealed)

    def test_without_key_stores_plain_json(self, caplog):
        """Test development mode without a key."""
        cipher = IntegrationCipher(None)

        assert cipher.enabled is False
        assert json.loads(cipher.seal({"a": "b"})) == {"a": "b"}
        assert "unencrypted" in caplog.text

    def test_empty_secrets(self):
        """Test configs without secrets store nothing."""
        cipher = IntegrationCipher(None)

        assert cipher.seal({}) is None
        assert cipher.open(None) == {}


class TestIntegrationService:
    """Tests for integration lifecycle."""

    def test_upsert_seals_secrets(self, integrations, cipher, db, sample_user_id):
        """Test stored config holds no secrets and reopens to the typed config."""
        integration, created = integrations.upsert(
            sample_user_id, "whatsapp", "twilio", "main", TWILIO_WHATSAPP_CONFIG
        )
        db.commit()

        assert created is True
        assert "auth_token" not in integration.config
        assert "twilio_token" not in integration.secrets_encrypted

        config = cipher.open_config(integration)
        assert config.auth_token == "twilio_token"
        assert config.phone_number == "+14155238886"

    def test_upsert_same_name_updates(self, integrations, db, sample_user_id):
        """Test upsert by (user, platform, name)."""
        first, _ = integrations.upsert(sample_user_id, "whatsapp", "twilio", "main", TWILIO_WHATSAPP_CONFIG)
        db.commit()
        second, created = integrations.upsert(
            sample_user_id,
            "whatsapp",
            "twilio",
            "main",
            {**TWILIO_WHATSAPP_CONFIG, "phone_number": "+14155550000"},
        )
        db.commit()

        assert created is False
        assert second.id == first.id
        assert second.config["phone_number"] == "+14155550000"

    def test_activating_replaces_other_integration(self, integrations, repo, db, sample_user_id):
        """Test one active integration per (user, platform)."""
        old, _ = integrations.upsert(sample_user_id, "whatsapp", "twilio", "old", TWILIO_WHATSAPP_CONFIG)
        new, _ = integrations.upsert(sample_user_id, "whatsapp", "meta", "new", META_WHATSAPP_CONFIG)
        db.commit()

        db.refresh(old)
        assert old.status == IntegrationStatus.INACTIVE.value
        assert new.status == IntegrationStatus.ACTIVE.value
        assert repo.get_active_integration(sample_user_id, "whatsapp").id == new.id

    def test_invalid_config_is_not_saved(self, integrations, repo, sample_user_id):
        """Test validation happens before anything is written."""
        with pytest.raises(IntegrationConfigError):
            integrations.upsert(sample_user_id, "telegram", "telegram", "bot", {"bot_token": "x"})

        assert repo.list_integrations(sample_user_id) == []

    def test_deactivate_and_delete(self, integrations, repo, db, sample_user_id, other_user_id):
        """Test deactivate/delete are scoped to the owning user."""
        integration, _ = integrations.upsert(sample_user_id, "whatsapp", "twilio", "main", TWILIO_WHATSAPP_CONFIG)
        db.commit()

        assert integrations.deactivate(other_user_id, integration.id) is None
        assert integrations.deactivate(sample_user_id, integration.id).status == IntegrationStatus.INACTIVE.value
        assert repo.get_active_integration(sample_user_id, "whatsapp") is None

        assert integrations.delete(other_user_id, integration.id) is False
        assert integrations.delete(sample_user_id, integration.id) is True
        assert integrations.list(sample_user_id) == []
