"""
Tests for webhook payload parsing.
"""

from datetime import datetime

import pytest

from messaging_gateway.providers.base import MessageType, Platform
from messaging_gateway.providers.configs import (
    EmailConfig,
    FacebookConfig,
    MetaWhatsAppConfig,
    TwilioSmsConfig,
)
from messaging_gateway.providers.discord import DiscordAdapter, is_ping
from messaging_gateway.providers.email import EmailAdapter
from messaging_gateway.providers.meta_cloud import (
    FacebookMessengerAdapter,
    InstagramAdapter,
    MetaWhatsAppAdapter,
)
from messaging_gateway.providers.meta_cloud.webhook import (
    extract_page_id,
    extract_phone_number_id,
)
from messaging_gateway.providers.registry import build_default_registry
from messaging_gateway.providers.slack import SlackAdapter, is_url_verification
from messaging_gateway.providers.telegram import TelegramAdapter
from messaging_gateway.providers.tiktok import TikTokAdapter
from messaging_gateway.providers.twilio import TwilioSmsAdapter, TwilioWhatsAppAdapter
from messaging_gateway.providers.widget import LiveChatAdapter, WebsiteChatAdapter
from messaging_gateway.service.extraction import extract_message_info

from conftest import meta_entry


@pytest.fixture
def telegram_update():
    """Telegram private chat message update."""
    return {
        "update_id": 1001,
        "message": {
            "message_id": 42,
            "date": 1704067200,
            "from": {"id": 777, "is_bot": False, "first_name": "Ada", "last_name": "L", "username": "ada"},
            "chat": {"id": -1009, "type": "group"},
            "text": "Where is my order?",
        },
    }


@pytest.fixture
def messenger_webhook():
    """Facebook Messenger text message."""
    return {
        "object": "page",
        "entry": [
            {
                "id": "PAGE_1",
                "time": 1704067200000,
                "messaging": [
                    {
                        "sender": {"id": "PSID_9"},
                        "recipient": {"id": "PAGE_1"},
                        "timestamp": 1704067200000,
                        "message": {"mid": "m_abc", "text": "Hello page"},
                    }
                ],
            }
        ],
    }


class TestTwilioParsing:
    """Tests for Twilio form webhooks."""

    def test_parse_inbound_text(self, twilio_webhook):
        """Test inbound WhatsApp text strips the channel prefix."""
        messages, statuses = TwilioWhatsAppAdapter().parse_webhook(twilio_webhook())

        assert len(messages) == 1
        assert statuses == []
        msg = messages[0]
        assert msg.platform == Platform.WHATSAPP
        assert msg.message_id == "SM123"
        assert msg.sender_id == "+15551234567"
        assert msg.recipient_id == "+14155238886"
        assert msg.sender_name == "Jane"
        assert msg.content == "urgent help needed"
        assert msg.message_type == MessageType.TEXT

    def test_parse_inbound_media(self, twilio_webhook):
        """Test NumMedia > 0 picks the first media item and infers its type."""
        payload = twilio_webhook(body="")
        payload.update(NumMedia="1", MediaUrl0="https://api.twilio.com/media/1", MediaContentType0="image/jpeg")

        messages, _ = TwilioWhatsAppAdapter().parse_webhook(payload)

        assert messages[0].message_type == MessageType.IMAGE
        assert messages[0].media_url == "https://api.twilio.com/media/1"
        assert messages[0].media_mime_type == "image/jpeg"

    def test_parse_status_callback(self):
        """Test status callbacks map Twilio statuses to ours."""
        payload = {
            "MessageSid": "SM999",
            "MessageStatus": "undelivered",
            "From": "whatsapp:+14155238886",
            "To": "whatsapp:+15551234567",
            "ErrorCode": "63016",
        }

        messages, statuses = TwilioWhatsAppAdapter().parse_webhook(payload)

        assert messages == []
        assert len(statuses) == 1
        assert statuses[0].message_id == "SM999"
        assert statuses[0].status == "failed"
        assert statuses[0].error_code == "63016"

    def test_status_callback_identity_is_business_number(self):
        """Test status callbacks resolve the tenant by From, not To."""
        adapter = TwilioWhatsAppAdapter()
        payload = {"MessageSid": "SM1", "MessageStatus": "delivered", "From": "whatsapp:+14155238886", "To": "+1555"}

        assert adapter.webhook_identity(payload) == "+14155238886"

    def test_inbound_identity_is_to(self, twilio_webhook):
        assert TwilioWhatsAppAdapter().webhook_identity(twilio_webhook()) == "+14155238886"

    def test_sms_skips_own_number(self):
        """Test SMS echoes from the business number are skipped."""
        config = TwilioSmsConfig(account_sid="AC1", auth_token="t", phone_number="+14155550000")
        payload = {"SmsSid": "SM1", "From": "+14155550000", "To": "+15551234567", "Body": "echo"}

        messages, _ = TwilioSmsAdapter().parse_webhook(payload, config)

        assert messages == []

    def test_twilio_rejects_meta_shape(self, meta_text_message_webhook):
        assert TwilioWhatsAppAdapter().accepts(meta_text_message_webhook) is False


class TestMetaWhatsAppParsing:
    """Tests for WhatsApp Cloud API webhooks."""

    def test_parse_text_message(self, meta_text_message_webhook):
        """Test parsing text message webhook."""
        messages, statuses = MetaWhatsAppAdapter().parse_webhook(meta_text_message_webhook)

        assert len(messages) == 1
        assert len(statuses) == 0

        msg = messages[0]
        assert msg.message_id == "wamid.HBgM"
        assert msg.sender_id == "15558888888"
        assert msg.sender_name == "John Doe"
        assert msg.recipient_id == "PHONE_123"
        assert msg.content == "How do I reset my password?"
        assert msg.message_type == MessageType.TEXT
        assert msg.timestamp == datetime(2024, 1, 1, 0, 0, 0)

    def test_parse_status_update(self, meta_status_webhook):
        """Test parsing status update webhook."""
        messages, statuses = MetaWhatsAppAdapter().parse_webhook(meta_status_webhook)

        assert messages == []
        assert len(statuses) == 1
        assert statuses[0].message_id == "wamid.OUT1"
        assert statuses[0].status == "delivered"
        assert statuses[0].recipient_id == "15558888888"

    def test_parse_button_reply(self, meta_text_message_webhook):
        """Test interactive replies use the button title as content."""
        msg = meta_text_message_webhook["entry"][0]["changes"][0]["value"]["messages"][0]
        msg.pop("text")
        msg["type"] = "interactive"
        msg["interactive"] = {"type": "button_reply", "button_reply": {"id": "yes", "title": "Yes please"}}

        messages, _ = MetaWhatsAppAdapter().parse_webhook(meta_text_message_webhook)

        assert messages[0].content == "Yes please"
        assert messages[0].message_type == MessageType.TEXT

    def test_ignores_other_objects(self):
        """Test non-WhatsApp webhooks are ignored."""
        messages, statuses = MetaWhatsAppAdapter().parse_webhook({"object": "page", "entry": []})

        assert messages == []
        assert statuses == []

    def test_phone_number_id(self, meta_text_message_webhook):
        assert extract_phone_number_id(meta_text_message_webhook) == "PHONE_123"
        assert extract_phone_number_id({"entry": []}) is None

    def test_mixed_phone_numbers_have_no_identity(self, meta_text_message_webhook):
        """Test a delivery for two business numbers is never attributed to one of them."""
        meta_text_message_webhook["entry"].append(meta_entry("PHONE_B", "15550001111", "wamid.B"))

        assert extract_phone_number_id(meta_text_message_webhook) is None

    def test_config_skips_foreign_phone_numbers(self, meta_text_message_webhook):
        """Test only changes for the integration's own number are parsed."""
        meta_text_message_webhook["entry"].append(meta_entry("PHONE_B", "15550001111", "wamid.B"))
        config = MetaWhatsAppConfig(access_token="t", phone_number_id="PHONE_123", business_account_id="WABA_123")

        messages, _ = MetaWhatsAppAdapter().parse_webhook(meta_text_message_webhook, config)

        assert [m.message_id for m in messages] == ["wamid.HBgM"]


class TestTelegramParsing:
    """Tests for Telegram updates."""

    def test_parse_message(self, telegram_update):
        messages, statuses = TelegramAdapter().parse_webhook(telegram_update)

        assert statuses == []
        msg = messages[0]
        assert msg.platform == Platform.TELEGRAM
        assert msg.message_id == "42"
        assert msg.sender_id == "777"
        assert msg.sender_name == "Ada L"
        assert msg.content == "Where is my order?"
        assert msg.timestamp == datetime(2024, 1, 1, 0, 0, 0)

    def test_channel_post_falls_back_to_chat(self):
        """Test channel posts without a sender use the chat id."""
        update = {
            "update_id": 5,
            "channel_post": {"message_id": 7, "date": 1704067200, "chat": {"id": -100555}, "text": "news"},
        }

        messages, _ = TelegramAdapter().parse_webhook(update)

        assert messages[0].sender_id == "-100555"

    def test_skips_bots(self, telegram_update):
        telegram_update["message"]["from"]["is_bot"] = True

        messages, _ = TelegramAdapter().parse_webhook(telegram_update)

        assert messages == []

    def test_photo_uses_caption(self, telegram_update):
        message = telegram_update["message"]
        message.pop("text")
        message["photo"] = [{"file_id": "f1"}]
        message["caption"] = "broken part"

        messages, _ = TelegramAdapter().parse_webhook(telegram_update)

        assert messages[0].content == "broken part"
        assert messages[0].message_type == MessageType.IMAGE

    def test_update_without_message_ignored(self):
        messages, _ = TelegramAdapter().parse_webhook({"update_id": 9, "callback_query": {"id": "1"}})

        assert messages == []

    def test_identity_comes_from_secret_header(self, telegram_update):
        adapter = TelegramAdapter()

        assert adapter.webhook_identity(telegram_update, {"x-telegram-bot-api-secret-token": "abc"}) == "abc"
        assert adapter.webhook_identity(telegram_update, {}) is None


class TestMessengerParsing:
    """Tests for Facebook Messenger and Instagram webhooks."""

    def test_parse_text(self, messenger_webhook):
        messages, _ = FacebookMessengerAdapter().parse_webhook(messenger_webhook)

        msg = messages[0]
        assert msg.platform == Platform.FACEBOOK
        assert msg.message_id == "m_abc"
        assert msg.sender_id == "PSID_9"
        assert msg.recipient_id == "PAGE_1"
        assert msg.timestamp == datetime(2024, 1, 1, 0, 0, 0)

    def test_skips_echo(self, messenger_webhook):
        """Test the page's own echoed messages are skipped."""
        messenger_webhook["entry"][0]["messaging"][0]["message"]["is_echo"] = True

        messages, _ = FacebookMessengerAdapter().parse_webhook(messenger_webhook)

        assert messages == []

    def test_delivery_event(self, messenger_webhook):
        messenger_webhook["entry"][0]["messaging"] = [
            {"sender": {"id": "PSID_9"}, "delivery": {"mids": ["m_1", "m_2"], "watermark": 1704067200000}}
        ]

        messages, statuses = FacebookMessengerAdapter().parse_webhook(messenger_webhook)

        assert messages == []
        assert [s.message_id for s in statuses] == ["m_1", "m_2"]
        assert all(s.status == "delivered" for s in statuses)

    def test_attachment(self, messenger_webhook):
        messenger_webhook["entry"][0]["messaging"][0]["message"] = {
            "mid": "m_img",
            "attachments": [{"type": "image", "payload": {"url": "https://cdn.example.com/a.jpg"}}],
        }

        messages, _ = FacebookMessengerAdapter().parse_webhook(messenger_webhook)

        assert messages[0].message_type == MessageType.IMAGE
        assert messages[0].media_url == "https://cdn.example.com/a.jpg"

    def test_instagram_object(self, messenger_webhook):
        """Test Instagram only accepts object=instagram."""
        adapter = InstagramAdapter()
        assert adapter.parse_webhook(messenger_webhook) == ([], [])

        messenger_webhook["object"] = "instagram"
        messages, _ = adapter.parse_webhook(messenger_webhook)

        assert messages[0].platform == Platform.INSTAGRAM

    def test_page_id_must_be_unique(self, messenger_webhook):
        assert extract_page_id(messenger_webhook) == "PAGE_1"

        messenger_webhook["entry"].append({"id": "PAGE_2", "messaging": []})
        assert extract_page_id(messenger_webhook) is None

    def test_config_skips_foreign_pages(self, messenger_webhook):
        event = dict(messenger_webhook["entry"][0]["messaging"][0], recipient={"id": "PAGE_2"})
        foreign = {"id": "PAGE_2", "messaging": [event]}
        messenger_webhook["entry"].append(foreign)

        messages, _ = FacebookMessengerAdapter().parse_webhook(
            messenger_webhook, FacebookConfig(page_id="PAGE_1", page_access_token="t")
        )

        assert [m.recipient_id for m in messages] == ["PAGE_1"]


class TestSlackParsing:
    """Tests for Slack Events API callbacks."""

    def _event(self, **overrides):
        event = {"type": "message", "channel": "C1", "user": "U1", "text": "help", "ts": "1704067200.0001"}
        event.update(overrides)
        return {"type": "event_callback", "team_id": "T1", "event": event}

    def test_parse_user_message(self):
        messages, _ = SlackAdapter().parse_webhook(self._event())

        msg = messages[0]
        assert msg.sender_id == "C1"
        assert msg.sender_name == "U1"
        assert msg.message_id == "1704067200.0001"
        assert msg.content == "help"

    def test_skips_bot_messages(self):
        assert SlackAdapter().parse_webhook(self._event(bot_id="B1")) == ([], [])
        assert SlackAdapter().parse_webhook(self._event(subtype="message_changed")) == ([], [])

    def test_url_verification_detection(self):
        assert is_url_verification({"type": "url_verification", "challenge": "x"}) is True
        assert SlackAdapter().parse_webhook({"type": "url_verification"}) == ([], [])

    def test_identity_is_team(self):
        assert SlackAdapter().webhook_identity(self._event()) == "T1"


class TestDiscordParsing:
    """Tests for Discord message-create payloads."""

    def _message(self, **author):
        return {
            "id": "111",
            "channel_id": "222",
            "guild_id": "333",
            "content": "hello",
            "timestamp": "2024-01-01T00:00:00+00:00",
            "author": {"id": "444", "username": "sam", **author},
        }

    def test_parse_message(self):
        messages, _ = DiscordAdapter().parse_webhook(self._message())

        msg = messages[0]
        assert msg.message_id == "111"
        assert msg.sender_id == "222"
        assert msg.sender_name == "sam"
        assert msg.timestamp == datetime(2024, 1, 1, 0, 0, 0)

    def test_gateway_dispatch_wrapper(self):
        """Test payloads wrapped in a gateway dispatch "d" are unwrapped."""
        adapter = DiscordAdapter()
        payload = {"t": "MESSAGE_CREATE", "d": self._message()}

        assert adapter.webhook_identity(payload) == "333"
        assert len(adapter.parse_webhook(payload)[0]) == 1

    def test_skips_bots(self):
        assert DiscordAdapter().parse_webhook(self._message(bot=True)) == ([], [])

    def test_ping(self):
        assert is_ping({"type": 1}) is True
        assert is_ping({"type": 1, "author": {}}) is False


class TestEmailParsing:
    """Tests for inbound-parse email webhooks."""

    CONFIG = EmailConfig(email="support@acme.test", app_password="pw", smtp_host="smtp.acme.test")

    def test_parse_email(self):
        payload = {
            "from": "Jane Roe <Jane@Example.com>",
            "to": "support@acme.test",
            "subject": "Refund",
            "text": "I want my money back",
            "message_id": "<abc@example.com>",
        }

        messages, _ = EmailAdapter().parse_webhook(payload, self.CONFIG)

        msg = messages[0]
        assert msg.sender_id == "jane@example.com"
        assert msg.sender_name == "Jane Roe"
        assert msg.content == "Refund\n\nI want my money back"
        assert msg.message_id == "<abc@example.com>"

    def test_skips_own_address(self):
        payload = {"from": "support@acme.test", "to": "support@acme.test", "text": "loop"}

        assert EmailAdapter().parse_webhook(payload, self.CONFIG) == ([], [])

    def test_identity_is_recipient(self):
        assert EmailAdapter().webhook_identity({"to": "Support <SUPPORT@acme.test>"}) == "support@acme.test"


class TestWidgetParsing:
    """Tests for chat widget events."""

    def test_parse_visitor_message(self):
        payload = {"widget_id": "w1", "visitor_id": "v1", "content": "hi there", "message_id": "wm1"}

        messages, _ = LiveChatAdapter().parse_webhook(payload)

        assert messages[0].platform == Platform.LIVE_CHAT
        assert messages[0].sender_id == "v1"
        assert messages[0].recipient_id == "w1"

    def test_website_chat_platform(self):
        payload = {"widget_id": "w1", "session_id": "s1", "message": "hello"}

        messages, _ = WebsiteChatAdapter().parse_webhook(payload)

        assert messages[0].platform == Platform.WEBSITE_CHAT
        assert messages[0].sender_id == "s1"

    @pytest.mark.parametrize(
        "payload",
        [
            {"widget_id": "w1", "visitor_id": "v1", "type": "typing"},
            {"widget_id": "w1", "visitor_id": "v1", "content": "reply", "sender_type": "agent"},
            {"widget_id": "w1", "visitor_id": "v1", "content": ""},
        ],
    )
    def test_skips_non_visitor_events(self, payload):
        assert LiveChatAdapter().parse_webhook(payload) == ([], [])


class TestTikTokStub:
    """Tests for the TikTok placeholder."""

    def test_parses_nothing(self):
        adapter = TikTokAdapter()

        assert adapter.parse_webhook({"anything": True}) == ([], [])
        assert adapter.webhook_identity({"anything": True}) is None


class TestWebhookShapeDetection:
    """Tests for picking the adapter of a platform from the payload shape."""

    def test_whatsapp_shapes(self, twilio_webhook, meta_text_message_webhook):
        registry = build_default_registry()

        assert registry.for_webhook(Platform.WHATSAPP, twilio_webhook()).provider == "twilio"
        assert registry.for_webhook(Platform.WHATSAPP, meta_text_message_webhook).provider == "meta"

    def test_unknown_shape(self):
        registry = build_default_registry()

        assert registry.for_webhook(Platform.TELEGRAM, {"not": "an update"}) is None
        assert registry.for_webhook("carrier-pigeon", {}) is None


class TestExtractMessageInfo:
    """Tests for raw payload extraction used to address auto-replies."""

    def test_twilio(self, twilio_webhook):
        info = extract_message_info(Platform.WHATSAPP, twilio_webhook())

        assert info.sender_id == "+15551234567"
        assert info.reply_to == "+15551234567"
        assert info.message_id == "SM123"
        assert info.sender_name == "Jane"

    def test_meta_whatsapp(self, meta_text_message_webhook):
        info = extract_message_info("whatsapp", meta_text_message_webhook)

        assert info.sender_id == "15558888888"
        assert info.content == "How do I reset my password?"
        assert info.sender_name == "John Doe"

    def test_telegram_replies_to_chat(self, telegram_update):
        """Test group messages reply to the chat, not the sender."""
        info = extract_message_info(Platform.TELEGRAM, telegram_update)

        assert info.sender_id == "777"
        assert info.reply_to == "-1009"
        assert info.message_id == "42"
        assert info.sender_name == "ada"

    def test_messenger(self, messenger_webhook):
        info = extract_message_info(Platform.FACEBOOK, messenger_webhook)

        assert info.to_dict()["sender_id"] == "PSID_9"
        assert info.message_id == "m_abc"

    def test_unsupported(self):
        assert extract_message_info(Platform.SLACK, {"type": "event_callback"}) is None
        assert extract_message_info("fax", {}) is None
        assert extract_message_info(Platform.WHATSAPP, {"entry": []}) is None
