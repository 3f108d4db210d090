"""
Messaging Webhook Service

FastAPI app that receives webhooks from every connected messaging provider
and exposes the outbound send endpoint.

Responsibilities:
- Answer provider handshakes (Meta verify challenge, Slack url_verification, Discord PING)
- Hand webhook payloads to the messaging gateway (tenant resolution, signature
  check, persistence, classification, routing)
- Acknowledge quickly; side effects run in the background
- Send messages for authenticated users
"""

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from basecore.db import get_db
from basecore.logging import setup_logging
from basecore.redis import get_redis_client
from basecore.settings import Settings, get_settings
from messaging_gateway.providers.base import MessageType, OutboundMessage, Platform, WebhookRequest
from messaging_gateway.providers.discord import is_ping
from messaging_gateway.providers.registry import ProviderRegistry, build_default_registry
from messaging_gateway.providers.signatures import verify_meta_challenge
from messaging_gateway.providers.slack import is_url_verification
from messaging_gateway.routing.classifier import LLMClassifier, MessageClassifier
from messaging_gateway.service.gateway import MessagingGateway, create_gateway
from messaging_gateway.service.integrations import IntegrationCipher
from messaging_gateway.service.side_effects import BestEffortDispatcher
from messaging_gateway.streams.groups import ensure_messaging_streams
from messaging_gateway.streams.producer import MessagingStreamProducer

setup_logging()
logger = logging.getLogger(__name__)

META_PLATFORMS = {Platform.WHATSAPP, Platform.FACEBOOK, Platform.INSTAGRAM}
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
CONFIG_ERROR_CODES = {"no_integration", "unsupported_provider", "invalid_config"}

app = FastAPI(
    title="Messaging Webhook",
    description="Receives messaging provider webhooks and sends outbound messages",
    version="1.0.0",
)


@dataclass
class WebhookRuntime:
    """Process-wide collaborators shared by every request."""

    settings: Settings
    registry: ProviderRegistry
    producer: MessagingStreamProducer
    classifier: MessageClassifier
    dispatcher: BestEffortDispatcher
    cipher: IntegrationCipher


def build_runtime(settings: Settings) -> WebhookRuntime:
    redis_client = get_redis_client()
    ensure_messaging_streams(redis_client)
    producer = MessagingStreamProducer(redis_client, max_len=settings.STREAM_MAX_LEN)

    primary = None
    if settings.CLASSIFIER_API_KEY:
        primary = LLMClassifier(
            settings.CLASSIFIER_API_URL,
            settings.CLASSIFIER_API_KEY,
            model=settings.CLASSIFIER_MODEL,
            timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
        )

    return WebhookRuntime(
        settings=settings,
        registry=build_default_registry(producer=producer, timeout=settings.PROVIDER_TIMEOUT_SECONDS),
        producer=producer,
        classifier=MessageClassifier(primary),
        dispatcher=BestEffortDispatcher(timeout=settings.SIDE_EFFECT_TIMEOUT_SECONDS),
        cipher=IntegrationCipher(settings.MESSAGING_ENCRYPTION_KEY),
    )


@app.on_event("startup")
async def startup():
    """Build providers and ensure Redis streams exist."""
    if getattr(app.state, "runtime", None) is not None:
        return
    try:
        app.state.runtime = build_runtime(get_settings())
        logger.info("Messaging webhook service started")
    except Exception as e:
        logger.error(f"Failed to initialize messaging runtime: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    runtime: WebhookRuntime | None = getattr(app.state, "runtime", None)
    if runtime is None:
        return
    await runtime.dispatcher.drain()
    await runtime.registry.aclose()
    await runtime.classifier.aclose()


def get_runtime(request: Request) -> WebhookRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return runtime


def get_gateway(
    db: Session = Depends(get_db),
    runtime: WebhookRuntime = Depends(get_runtime),
) -> MessagingGateway:
    return create_gateway(
        db,
        runtime.registry,
        producer=runtime.producer,
        classifier=runtime.classifier,
        dispatcher=runtime.dispatcher,
        cipher=runtime.cipher,
        settings=runtime.settings,
    )


def _platform_or_404(platform: str) -> Platform:
    try:
        return Platform(platform)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unsupported platform: {platform}")


def _signed_url(request: Request, settings: Settings) -> str:
    """URL the provider signed; behind a proxy the public base URL is used."""
    if settings.PUBLIC_WEBHOOK_BASE_URL:
        url = settings.PUBLIC_WEBHOOK_BASE_URL.rstrip("/") + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"
        return url
    return str(request.url)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "messaging-webhook"}


@app.get("/webhooks/{platform}")
async def verify_webhook(
    platform: str,
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    runtime: WebhookRuntime = Depends(get_runtime),
):
    """
    Handle Meta webhook verification (WhatsApp Cloud, Messenger, Instagram).

    Meta sends a GET request with hub.mode, hub.verify_token, and hub.challenge.
    We must return hub.challenge if the token matches.
    """
    if _platform_or_404(platform) not in META_PLATFORMS:
        raise HTTPException(status_code=404, detail="No verification handshake for this platform")

    challenge = verify_meta_challenge(
        mode=hub_mode or "",
        token=hub_verify_token or "",
        challenge=hub_challenge or "",
        verify_token=runtime.settings.META_VERIFY_TOKEN,
    )
    if challenge is not None:
        return Response(content=challenge, media_type="text/plain")

    raise HTTPException(status_code=403, detail="Verification failed")


@app.post("/webhooks/{platform}")
async def receive_webhook(
    platform: str,
    request: Request,
    runtime: WebhookRuntime = Depends(get_runtime),
    gateway: MessagingGateway = Depends(get_gateway),
):
    """
    Receive a webhook from any provider of a platform.

    Twilio posts form-encoded bodies and gets an empty TwiML response;
    everything else posts JSON and gets the processing result.
    """
    platform_enum = _platform_or_404(platform)
    body = await request.body()

    is_form = request.headers.get("content-type", "").startswith(FORM_CONTENT_TYPE)
    form: dict[str, str] | None = None
    if is_form:
        try:
            form = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError:
            logger.warning(f"Invalid form payload on {platform_enum.value} webhook")
            raise HTTPException(status_code=400, detail="Invalid form body")
        payload: Any = dict(form)
    else:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning(f"Invalid JSON payload on {platform_enum.value} webhook")
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object")

    if platform_enum == Platform.SLACK and is_url_verification(payload):
        return {"challenge": payload.get("challenge", "")}
    if platform_enum == Platform.DISCORD and is_ping(payload):
        return {"type": 1}

    webhook_request = WebhookRequest(
        body=body,
        headers=dict(request.headers),
        url=_signed_url(request, runtime.settings),
        form=form,
    )

    try:
        result = await gateway.handle_inbound_message(platform_enum, payload, webhook_request)
    except Exception as e:
        logger.error(f"Error processing {platform_enum.value} webhook: {e}", exc_info=True)
        # Still acknowledge so the provider does not retry a poison payload
        result = {"status": "error", "reason": "internal_error"}

    if result.get("reason") == "invalid_signature":
        raise HTTPException(status_code=403, detail="Invalid signature")

    if is_form:
        return Response(content=EMPTY_TWIML, media_type="application/xml")
    return result


class SendMessageRequest(BaseModel):
    """Outbound send request body."""

    platform: str = Field(..., description="Platform to send on")
    to: str = Field(..., description="Recipient on the platform")
    content: str = Field("", description="Message text or caption")
    message_type: MessageType = Field(MessageType.TEXT, description="Message type")
    media_url: str | None = Field(None, description="Media URL for media messages")
    conversation_id: UUID | None = Field(None, description="Record the message on this conversation")
    subject: str | None = Field(None, description="Email subject")
    session_id: str | None = Field(None, description="Chat widget session")


@app.post("/messages/send")
async def send_message(
    body: SendMessageRequest,
    response: Response,
    x_user_id: str | None = Header(None, alias="X-User-Id"),
    gateway: MessagingGateway = Depends(get_gateway),
):
    """Send a message through the user's active integration for the platform."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid X-User-Id")

    result = await gateway.send_message(
        user_id,
        OutboundMessage(
            platform=body.platform,
            to=body.to,
            content=body.content,
            message_type=body.message_type,
            media_url=body.media_url,
            conversation_id=body.conversation_id,
            subject=body.subject,
            session_id=body.session_id,
        ),
    )

    if not result.success:
        if result.error_code in CONFIG_ERROR_CODES or (result.error or "").startswith("Unsupported platform"):
            response.status_code = 400
        else:
            response.status_code = 502
    return result.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8090)
