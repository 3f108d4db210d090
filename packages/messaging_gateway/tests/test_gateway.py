"""
Tests for the messaging gateway: inbound webhooks end to end and outbound sends.
"""

import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest

from messaging_gateway.contracts.envelope import MessagingEnvelope
from messaging_gateway.contracts.event_types import MessagingEventType
from messaging_gateway.persistence.models import ConversationStatus, MessageStatus, Priority
from messaging_gateway.providers.base import OutboundMessage, Platform, WebhookRequest, utcnow
from messaging_gateway.routing.classifier import KeywordClassifier, MessageClassifier
from messaging_gateway.routing.tenant_resolver import TenantResolver
from messaging_gateway.service.gateway import MessagingGateway
from messaging_gateway.streams.groups import (
    AGENT_REQUESTS_STREAM,
    CONVERSATION_STATE_STREAM,
    REALTIME_STREAM,
)

from conftest import META_WHATSAPP_CONFIG, TWILIO_WHATSAPP_CONFIG, meta_entry

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"


def read_stream(redis_client, stream):
    return [MessagingEnvelope.from_stream_message(msg_id, data) for msg_id, data in redis_client.xrange(stream)]


class FailingClassifier:
    async def classify(self, content, context):
        raise RuntimeError("classifier down")


class RecordingClassifier:
    """Keyword classification that remembers the context it was given."""

    def __init__(self):
        self.contexts = []

    async def classify(self, content, context):
        self.contexts.append(context)
        return KeywordClassifier().classify(content, context)


class TestInboundTwilio:
    """Tests for a Twilio WhatsApp inbound message end to end."""

    async def test_urgent_message_escalates(self, gateway, connect, repo, sample_user_id, sample_phone, twilio_webhook):
        integration = connect(sample_user_id, "whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)

        result = await gateway.handle_inbound_message(Platform.WHATSAPP, twilio_webhook("urgent help needed"))

        assert result["status"] == "processed"
        assert result["processed"] == 1
        assert result["user_id"] == str(sample_user_id)
        assert result["integration_id"] == str(integration.id)

        customer = repo.get_customer(sample_user_id, "whatsapp", sample_phone)
        assert customer is not None
        assert customer.display_name == "Jane"

        conversation = repo.get_active_conversation(customer.id, "whatsapp")
        assert str(conversation.id) in result["conversation_ids"]
        assert conversation.status == ConversationStatus.ESCALATED.value
        assert conversation.priority == Priority.URGENT.value
        assert conversation.tags == ["escalated"]

        (message,) = repo.list_messages(conversation.id)
        assert message.content == "urgent help needed"
        assert message.platform_message_id == "SM123"
        assert message.classification["escalation_recommended"] is True

    async def test_side_effects_published(self, gateway, connect, dispatcher, redis_client, sample_user_id, twilio_webhook):
        connect(sample_user_id, "whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)

        await gateway.handle_inbound_message(Platform.WHATSAPP, twilio_webhook("urgent help needed"))
        await dispatcher.drain()

        (received,) = read_stream(redis_client, REALTIME_STREAM)
        assert received.event_type == MessagingEventType.MESSAGE_RECEIVED.value
        assert received.user_id == sample_user_id
        assert received.payload["direction"] == "inbound"
        assert received.payload["content"] == "urgent help needed"

        (agent_request,) = read_stream(redis_client, AGENT_REQUESTS_STREAM)
        assert agent_request.payload["sender_id"] == "+15551234567"
        assert agent_request.payload["classification"]["priority"] == "urgent"
        assert agent_request.payload["context"]["conversation_status"] == "escalated"
        assert agent_request.correlation_id == agent_request.payload["conversation_id"]

        (state,) = read_stream(redis_client, CONVERSATION_STATE_STREAM)
        assert state.payload["status"] == "escalated"
        assert state.payload["previous_status"] is None
        assert state.payload["reason"] == "new_conversation"

    async def test_second_message_reuses_conversation(self, gateway, connect, repo, sample_user_id, twilio_webhook):
        connect(sample_user_id, "whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)

        first = await gateway.handle_inbound_message(Platform.WHATSAPP, twilio_webhook("hello", sid="SM1"))
        second = await gateway.handle_inbound_message(Platform.WHATSAPP, twilio_webhook("are you there?", sid="SM2"))

        assert first["conversation_ids"] == second["conversation_ids"]

    async def test_classifier_failure_does_not_block(self, repo, registry, cipher, connect, sample_user_id, twilio_webhook):
        connect(sample_user_id, "whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)
        gateway = MessagingGateway(
            repo=repo,
            resolver=TenantResolver(repo, registry, cipher),
            registry=registry,
            classifier=MessageClassifier(FailingClassifier()),
        )

        result = await gateway.handle_inbound_message(Platform.WHATSAPP, twilio_webhook("urgent help needed"))

        assert result["processed"] == 1

    async def test_returning_customer_context(
        self, repo, db, registry, cipher, connect, sample_user_id, sample_phone, twilio_webhook
    ):
        """Test the classifier sees the gap since the previous contact, not the current one."""
        connect(sample_user_id, "whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)
        customer, _ = repo.get_or_create_customer(sample_user_id, "whatsapp", sample_phone)
        customer.last_interaction_at = utcnow() - timedelta(days=30, hours=1)
        db.commit()
        recorder = RecordingClassifier()
        gateway = MessagingGateway(
            repo=repo,
            resolver=TenantResolver(repo, registry, cipher),
            registry=registry,
            classifier=MessageClassifier(recorder),
        )

        await gateway.handle_inbound_message(Platform.WHATSAPP, twilio_webhook("hello again"))

        (context,) = recorder.contexts
        assert context.days_since_last_contact == 30
        touched = repo.get_customer(sample_user_id, "whatsapp", sample_phone).last_interaction_at
        assert touched > utcnow() - timedelta(minutes=1)


class TestInboundMeta:
    """Tests for WhatsApp Cloud webhooks."""

    async def test_redelivery_stores_once(self, gateway, connect, repo, sample_user_id, meta_text_message_webhook):
        connect(sample_user_id, "whatsapp", "meta", META_WHATSAPP_CONFIG)

        first = await gateway.handle_inbound_message("whatsapp", meta_text_message_webhook)
        second = await gateway.handle_inbound_message("whatsapp", meta_text_message_webhook)

        assert first["processed"] == 1
        assert second["processed"] == 0
        assert second["duplicates"] == 1
        assert second["status"] == "processed"

        customer = repo.get_customer(sample_user_id, "whatsapp", "15558888888")
        conversation = repo.get_active_conversation(customer.id, "whatsapp")
        assert repo.count_messages(conversation.id) == 1
        assert conversation.category == "engagement"

    async def test_invalid_signature_rejected(self, gateway, connect, repo, sample_user_id, meta_text_message_webhook):
        connect(sample_user_id, "whatsapp", "meta", {**META_WHATSAPP_CONFIG, "app_secret": "app_secret"})
        body = json.dumps(meta_text_message_webhook).encode()
        request = WebhookRequest(body=body, headers={"X-Hub-Signature-256": "sha256=forged"})

        result = await gateway.handle_inbound_message("whatsapp", meta_text_message_webhook, request)

        assert result == {"status": "rejected", "reason": "invalid_signature"}
        assert repo.get_customer(sample_user_id, "whatsapp", "15558888888") is None

    async def test_valid_signature_accepted(self, gateway, connect, sample_user_id, meta_text_message_webhook):
        connect(sample_user_id, "whatsapp", "meta", {**META_WHATSAPP_CONFIG, "app_secret": "app_secret"})
        body = json.dumps(meta_text_message_webhook).encode()
        signature = "sha256=" + hmac.new(b"app_secret", body, hashlib.sha256).hexdigest()

        result = await gateway.handle_inbound_message(
            "whatsapp", meta_text_message_webhook, WebhookRequest(body=body, headers={"X-Hub-Signature-256": signature})
        )

        assert result["processed"] == 1

    async def test_delivery_status_updates_sent_message(
        self, gateway, connect, repo, db, dispatcher, redis_client, sample_user_id, meta_status_webhook
    ):
        connect(sample_user_id, "whatsapp", "meta", META_WHATSAPP_CONFIG)
        customer, _ = repo.get_or_create_customer(sample_user_id, "whatsapp", "15558888888")
        conversation, _ = repo.get_or_create_active_conversation(customer.id, sample_user_id, "whatsapp")
        repo.store_message(conversation, "agent", "Your order shipped", platform_message_id="wamid.OUT1")
        db.commit()

        result = await gateway.handle_inbound_message("whatsapp", meta_status_webhook)
        await dispatcher.drain()

        assert result["statuses_updated"] == 1
        message = repo.get_message_by_platform_id(sample_user_id, "whatsapp", "wamid.OUT1")
        assert message.status == MessageStatus.DELIVERED.value
        assert message.delivered_at is not None

        (event,) = read_stream(redis_client, REALTIME_STREAM)
        assert event.event_type == MessagingEventType.DELIVERY_STATUS_UPDATED.value
        assert event.payload["status"] == "delivered"

    async def test_unknown_delivery_status_ignored(self, gateway, connect, sample_user_id, meta_status_webhook):
        connect(sample_user_id, "whatsapp", "meta", META_WHATSAPP_CONFIG)
        meta_status_webhook["entry"][0]["changes"][0]["value"]["statuses"][0]["status"] = "deleted"

        result = await gateway.handle_inbound_message("whatsapp", meta_status_webhook)

        assert result["statuses_updated"] == 0

    async def test_mixed_phone_numbers_rejected(
        self, gateway, connect, repo, sample_user_id, other_user_id, meta_text_message_webhook
    ):
        """Test a delivery spanning two tenants' numbers is stored under neither."""
        connect(sample_user_id, "whatsapp", "meta", META_WHATSAPP_CONFIG)
        connect(other_user_id, "whatsapp", "meta", {**META_WHATSAPP_CONFIG, "phone_number_id": "PHONE_B"})
        meta_text_message_webhook["entry"].append(meta_entry("PHONE_B", "15550001111", "wamid.B"))

        result = await gateway.handle_inbound_message("whatsapp", meta_text_message_webhook)

        assert result == {"status": "rejected", "reason": "unknown_tenant"}
        assert repo.get_customer(sample_user_id, "whatsapp", "15550001111") is None
        assert repo.get_customer(other_user_id, "whatsapp", "15550001111") is None
        assert repo.get_customer(sample_user_id, "whatsapp", "15558888888") is None


class TestInboundRejections:
    """Tests for webhooks that must not be processed."""

    async def test_unknown_tenant(self, gateway, repo, sample_user_id, twilio_webhook):
        result = await gateway.handle_inbound_message(Platform.WHATSAPP, twilio_webhook())

        assert result == {"status": "rejected", "reason": "unknown_tenant"}
        assert repo.get_customer(sample_user_id, "whatsapp", "+15551234567") is None

    async def test_unsupported_platform(self, gateway):
        assert await gateway.handle_inbound_message("myspace", {}) == {
            "status": "ignored",
            "reason": "unsupported_platform",
        }

    async def test_unrecognized_payload(self, gateway):
        result = await gateway.handle_inbound_message(Platform.TELEGRAM, {"hello": "world"})

        assert result == {"status": "ignored", "reason": "unrecognized_payload"}

    async def test_nothing_to_process(self, gateway, connect, sample_user_id):
        connect(sample_user_id, "telegram", "telegram", {"bot_token": "1:a", "webhook_secret": "sec"})
        request = WebhookRequest(headers={"X-Telegram-Bot-Api-Secret-Token": "sec"})

        result = await gateway.handle_inbound_message("telegram", {"update_id": 3, "poll": {}}, request)

        assert result["status"] == "ignored"
        assert result["reason"] == "no_messages"


class TestInboundTelegram:
    """Tests for Telegram group chats."""

    async def test_auto_reply_targets_chat(self, gateway, connect, dispatcher, redis_client, sample_user_id):
        connect(sample_user_id, "telegram", "telegram", {"bot_token": "1:a", "webhook_secret": "sec"})
        update = {
            "update_id": 10,
            "message": {
                "message_id": 5,
                "date": 1704067200,
                "from": {"id": 777, "is_bot": False, "first_name": "Ada"},
                "chat": {"id": -1009, "type": "group"},
                "text": "anyone there?",
            },
        }
        request = WebhookRequest(headers={"X-Telegram-Bot-Api-Secret-Token": "sec"})

        result = await gateway.handle_inbound_message("telegram", update, request)
        await dispatcher.drain()

        assert result["processed"] == 1
        (agent_request,) = read_stream(redis_client, AGENT_REQUESTS_STREAM)
        assert agent_request.payload["sender_id"] == "-1009"
        assert agent_request.payload["context"]["customer_sender_id"] == "777"

    async def test_wrong_secret_is_unknown_tenant(self, gateway, connect, sample_user_id):
        connect(sample_user_id, "telegram", "telegram", {"bot_token": "1:a", "webhook_secret": "sec"})
        update = {"update_id": 1, "message": {"message_id": 1, "chat": {"id": 5}, "from": {"id": 5}, "text": "x"}}
        request = WebhookRequest(headers={"X-Telegram-Bot-Api-Secret-Token": "guess"})

        result = await gateway.handle_inbound_message("telegram", update, request)

        assert result["reason"] == "unknown_tenant"


class TestSendMessage:
    """Tests for outbound sends through the gateway."""

    async def test_without_integration_sends_nothing(self, gateway, respx_mock, sample_user_id):
        result = await gateway.send_message(sample_user_id, OutboundMessage(platform="whatsapp", to="+1555", content="hi"))

        assert result.success is False
        assert result.error_code == "no_integration"
        assert result.error == "No active whatsapp integration found"
        assert len(respx_mock.calls) == 0

    async def test_unsupported_platform(self, gateway, sample_user_id):
        result = await gateway.send_message(sample_user_id, OutboundMessage(platform="pager", to="1", content="hi"))

        assert result.success is False
        assert result.error == "Unsupported platform: pager"

    async def test_send_records_outbound(
        self, gateway, connect, repo, dispatcher, redis_client, respx_mock, sample_user_id, sample_phone
    ):
        connect(sample_user_id, "whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)
        customer, _ = repo.get_or_create_customer(sample_user_id, "whatsapp", sample_phone)
        conversation, _ = repo.get_or_create_active_conversation(customer.id, sample_user_id, "whatsapp")
        repo.db.commit()
        route = respx_mock.post(TWILIO_MESSAGES_URL).mock(return_value=httpx.Response(201, json={"sid": "SM_OUT_1"}))

        result = await gateway.send_message(
            sample_user_id,
            OutboundMessage(platform="whatsapp", to=sample_phone, content="On it!", conversation_id=conversation.id),
        )
        await dispatcher.drain()

        assert result.success is True
        assert route.call_count == 1
        stored = repo.get_message_by_platform_id(sample_user_id, "whatsapp", "SM_OUT_1")
        assert stored.direction == "outbound"
        assert stored.status == MessageStatus.SENT.value
        assert stored.conversation_id == conversation.id

        (event,) = read_stream(redis_client, REALTIME_STREAM)
        assert event.event_type == MessagingEventType.MESSAGE_SENT.value

    async def test_provider_failure_is_returned(self, gateway, connect, respx_mock, sample_user_id):
        connect(sample_user_id, "whatsapp", "twilio", TWILIO_WHATSAPP_CONFIG)
        respx_mock.post(TWILIO_MESSAGES_URL).mock(return_value=httpx.Response(401, json={"message": "Authenticate"}))

        result = await gateway.send_message(sample_user_id, OutboundMessage(platform="whatsapp", to="+1555", content="x"))

        assert result.success is False
        assert result.error == "Authenticate"


class TestConnectionCheck:
    """Tests for validating configs before connecting."""

    async def test_invalid_config(self, gateway):
        result = await gateway.test_connection("whatsapp", "twilio", {"account_sid": "AC1"})

        assert result.success is False
        assert "auth_token" in result.error

    async def test_unknown_provider(self, gateway):
        result = await gateway.test_connection("telegram", "carrier", {})

        assert result.success is False

    async def test_tiktok_not_supported(self, gateway):
        result = await gateway.test_connection("tiktok", "tiktok", {})

        assert result.success is False
        assert "not supported" in result.error


@pytest.mark.parametrize("platform", ["live_chat", "website_chat"])
async def test_widget_conversation(gateway, connect, repo, sample_user_id, platform):
    """Test widget visitors get their own customers per widget platform."""
    connect(sample_user_id, platform, "widget", {"widget_id": "w1", "business_name": "Acme"})

    result = await gateway.handle_inbound_message(
        platform, {"widget_id": "w1", "visitor_id": "visitor-9", "content": "Do you ship abroad?"}
    )

    assert result["processed"] == 1
    assert repo.get_customer(sample_user_id, platform, "visitor-9") is not None
