"""
Pytest fixtures for messaging gateway tests.
"""

from uuid import UUID

import fakeredis
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from messaging_gateway.persistence.models import MessagingBase
from messaging_gateway.persistence.repo import MessagingRepository
from messaging_gateway.providers.registry import build_default_registry
from messaging_gateway.routing.conversation import ConversationRouter
from messaging_gateway.routing.tenant_resolver import TenantResolver
from messaging_gateway.service.collaborators import (
    StreamAutoReplyTrigger,
    StreamBroadcaster,
    StreamConversationStateTracker,
)
from messaging_gateway.service.gateway import MessagingGateway
from messaging_gateway.service.integrations import IntegrationCipher, IntegrationService
from messaging_gateway.service.side_effects import BestEffortDispatcher
from messaging_gateway.streams.producer import MessagingStreamProducer

TWILIO_WHATSAPP_CONFIG = {
    "account_sid": "AC123",
    "auth_token": "twilio_token",
    "phone_number": "whatsapp:+14155238886",
}

META_WHATSAPP_CONFIG = {
    "access_token": "meta_token",
    "phone_number_id": "PHONE_123",
    "business_account_id": "WABA_123",
}


def meta_entry(phone_number_id, sender, message_id, body="hello"):
    """One WhatsApp Cloud webhook entry with a single text message."""
    return {
        "id": f"WABA_{phone_number_id}",
        "changes": [
            {
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"phone_number_id": phone_number_id},
                    "contacts": [{"profile": {"name": "Customer"}, "wa_id": sender}],
                    "messages": [
                        {
                            "from": sender,
                            "id": message_id,
                            "timestamp": "1704067200",
                            "text": {"body": body},
                            "type": "text",
                        }
                    ],
                },
                "field": "messages",
            }
        ],
    }


@pytest.fixture
def sample_user_id():
    """Sample tenant UUID."""
    return UUID("12345678-1234-1234-1234-123456789012")


@pytest.fixture
def other_user_id():
    """A second tenant."""
    return UUID("87654321-4321-4321-4321-210987654321")


@pytest.fixture
def sample_phone():
    """Sample customer phone number."""
    return "+15551234567"


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads, with working SAVEPOINTs."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    MessagingBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def repo(db):
    return MessagingRepository(db)


@pytest.fixture
def cipher():
    return IntegrationCipher(Fernet.generate_key().decode())


@pytest.fixture
def integrations(repo, cipher):
    return IntegrationService(repo, cipher)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def producer(redis_client):
    return MessagingStreamProducer(redis_client, max_len=1000)


@pytest.fixture
async def registry(producer):
    registry = build_default_registry(producer=producer, timeout=5.0)
    yield registry
    await registry.aclose()


@pytest.fixture
async def dispatcher():
    dispatcher = BestEffortDispatcher(timeout=2.0)
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def gateway(repo, registry, cipher, dispatcher, producer):
    return MessagingGateway(
        repo=repo,
        resolver=TenantResolver(repo, registry, cipher),
        registry=registry,
        router=ConversationRouter(repo),
        dispatcher=dispatcher,
        broadcaster=StreamBroadcaster(producer),
        auto_reply=StreamAutoReplyTrigger(producer),
        state_tracker=StreamConversationStateTracker(producer),
    )


@pytest.fixture
def connect(integrations, db):
    """Connect an active integration for a tenant and commit it."""

    def _connect(user_id, platform, provider, config, name="main"):
        integration, _ = integrations.upsert(user_id, platform, provider, name, config)
        db.commit()
        return integration

    return _connect


@pytest.fixture
def twilio_webhook():
    """Twilio WhatsApp inbound form webhook."""

    def _build(body="urgent help needed", sid="SM123", sender="whatsapp:+15551234567", to="whatsapp:+14155238886"):
        return {
            "MessageSid": sid,
            "AccountSid": "AC123",
            "From": sender,
            "To": to,
            "Body": body,
            "NumMedia": "0",
            "ProfileName": "Jane",
        }

    return _build


@pytest.fixture
def meta_text_message_webhook():
    """Sample Meta webhook for a text message."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_123",
                "changes": [
                    {
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": "PHONE_123",
                            },
                            "contacts": [
                                {
                                    "profile": {"name": "John Doe"},
                                    "wa_id": "15558888888",
                                }
                            ],
                            "messages": [
                                {
                                    "from": "15558888888",
                                    "id": "wamid.HBgM",
                                    "timestamp": "1704067200",
                                    "text": {"body": "How do I reset my password?"},
                                    "type": "text",
                                }
                            ],
                        },
                        "field": "messages",
                    }
                ],
            }
        ],
    }


@pytest.fixture
def meta_status_webhook():
    """Sample Meta webhook for a delivery status update."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_123",
                "changes": [
                    {
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": "PHONE_123",
                            },
                            "statuses": [
                                {
                                    "id": "wamid.OUT1",
                                    "status": "delivered",
                                    "timestamp": "1704067300",
                                    "recipient_id": "15558888888",
                                }
                            ],
                        },
                        "field": "messages",
                    }
                ],
            }
        ],
    }
