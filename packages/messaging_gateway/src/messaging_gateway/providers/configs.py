"""
Integration Configs

One pydantic model per (platform, provider) pair. Configs are validated when
an integration is saved or loaded, so a missing credential is reported at
construction time instead of on the first send.
"""

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from messaging_gateway.providers.base import Platform


class IntegrationConfigError(ValueError):
    """Integration config is missing fields or names an unknown provider."""


def normalize_phone(value: str | None) -> str:
    """Strip the ``whatsapp:`` channel prefix and whitespace from a phone number."""
    if not value:
        return ""
    value = value.strip()
    if value.lower().startswith("whatsapp:"):
        value = value[len("whatsapp:"):]
    return value.replace(" ", "")


class IntegrationConfig(BaseModel):
    """Base for typed integration configs."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    platform: ClassVar[Platform]
    provider: ClassVar[str]
    secret_fields: ClassVar[tuple[str, ...]] = ()

    def public_dict(self) -> dict[str, Any]:
        """Config without secret fields (stored in clear, used for identity matching)."""
        return self.model_dump(exclude=set(self.secret_fields), exclude_none=True)

    def secret_dict(self) -> dict[str, Any]:
        """Only the secret fields."""
        return self.model_dump(include=set(self.secret_fields), exclude_none=True)


class TwilioWhatsAppConfig(IntegrationConfig):
    platform = Platform.WHATSAPP
    provider = "twilio"
    secret_fields = ("auth_token",)

    account_sid: str = Field(..., min_length=1)
    auth_token: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1, description="Business number, with or without whatsapp:")

    @field_validator("phone_number")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        return normalize_phone(value)


class MetaWhatsAppConfig(IntegrationConfig):
    platform = Platform.WHATSAPP
    provider = "meta"
    secret_fields = ("access_token", "app_secret")

    access_token: str = Field(..., min_length=1)
    phone_number_id: str = Field(..., min_length=1)
    business_account_id: str = Field(..., min_length=1)
    display_phone_number: str | None = None
    app_secret: str | None = None


class TelegramConfig(IntegrationConfig):
    platform = Platform.TELEGRAM
    provider = "telegram"
    secret_fields = ("bot_token", "webhook_secret")

    bot_token: str = Field(..., min_length=1)
    webhook_secret: str = Field(..., min_length=1, description="secret_token registered with setWebhook")
    bot_username: str | None = None


class FacebookConfig(IntegrationConfig):
    platform = Platform.FACEBOOK
    provider = "meta"
    secret_fields = ("page_access_token", "app_secret")

    page_id: str = Field(..., min_length=1)
    page_access_token: str = Field(..., min_length=1)
    app_secret: str | None = None


class InstagramConfig(IntegrationConfig):
    platform = Platform.INSTAGRAM
    provider = "meta"
    secret_fields = ("page_access_token", "app_secret")

    page_id: str = Field(..., min_length=1)
    page_access_token: str = Field(..., min_length=1)
    instagram_account_id: str | None = None
    app_secret: str | None = None


class SlackConfig(IntegrationConfig):
    platform = Platform.SLACK
    provider = "slack"
    secret_fields = ("bot_token", "signing_secret")

    team_id: str = Field(..., min_length=1)
    bot_token: str = Field(..., min_length=1)
    signing_secret: str | None = None
    default_channel: str | None = None


class DiscordConfig(IntegrationConfig):
    platform = Platform.DISCORD
    provider = "discord"
    secret_fields = ("bot_token",)

    guild_id: str = Field(..., min_length=1)
    bot_token: str = Field(..., min_length=1)
    application_id: str | None = None


class EmailConfig(IntegrationConfig):
    platform = Platform.EMAIL
    provider = "smtp"
    secret_fields = ("app_password",)

    email: str = Field(..., min_length=3)
    app_password: str = Field(..., min_length=1)
    smtp_host: str = Field(..., min_length=1)
    smtp_port: int = Field(587, gt=0, lt=65536)
    display_name: str | None = None

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must be an address")
        return value.strip().lower()


class TwilioSmsConfig(IntegrationConfig):
    platform = Platform.SMS
    provider = "twilio"
    secret_fields = ("auth_token",)

    account_sid: str = Field(..., min_length=1)
    auth_token: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)
    messaging_service_sid: str | None = None

    @field_validator("phone_number")
    @classmethod
    def _strip_spaces(cls, value: str) -> str:
        return normalize_phone(value)


class LiveChatConfig(IntegrationConfig):
    platform = Platform.LIVE_CHAT
    provider = "widget"
    secret_fields = ("api_key",)

    widget_id: str = Field(..., min_length=1)
    business_name: str = Field(..., min_length=1)
    api_key: str | None = None
    welcome_message: str | None = None


class WebsiteChatConfig(LiveChatConfig):
    platform = Platform.WEBSITE_CHAT


class TikTokConfig(IntegrationConfig):
    platform = Platform.TIKTOK
    provider = "tiktok"


CONFIG_MODELS: dict[tuple[Platform, str], type[IntegrationConfig]] = {
    (model.platform, model.provider): model
    for model in (
        TwilioWhatsAppConfig,
        MetaWhatsAppConfig,
        TelegramConfig,
        FacebookConfig,
        InstagramConfig,
        SlackConfig,
        DiscordConfig,
        EmailConfig,
        TwilioSmsConfig,
        LiveChatConfig,
        WebsiteChatConfig,
        TikTokConfig,
    )
}


def parse_integration_config(
    platform: Platform | str,
    provider: str,
    data: dict[str, Any],
) -> IntegrationConfig:
    """
    Build the typed config for a (platform, provider) pair.

    Raises:
        IntegrationConfigError: Unknown pair or invalid/missing fields
    """
    try:
        platform = Platform(platform)
    except ValueError:
        raise IntegrationConfigError(f"Unsupported platform: {platform}")

    model = CONFIG_MODELS.get((platform, provider))
    if model is None:
        raise IntegrationConfigError(f"Unsupported provider for {platform.value}: {provider}")

    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise IntegrationConfigError(
            f"Invalid {platform.value}/{provider} config: {fields}"
        ) from e


def default_provider(platform: Platform | str) -> str:
    """
    Provider used when none is named: the first registered for the platform
    (``twilio`` for WhatsApp).

    Raises:
        IntegrationConfigError: Unknown platform
    """
    try:
        platform = Platform(platform)
    except ValueError:
        raise IntegrationConfigError(f"Unsupported platform: {platform}")

    for model_platform, provider in CONFIG_MODELS:
        if model_platform == platform:
            return provider
    raise IntegrationConfigError(f"No provider for {platform.value}")
