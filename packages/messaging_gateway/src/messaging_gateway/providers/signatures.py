"""
Webhook Signature Utilities

Signature checks for the providers that sign their webhook deliveries.
"""

import base64
import hashlib
import hmac
import logging
import time
from collections.abc import Mapping

logger = logging.getLogger(__name__)

SLACK_MAX_CLOCK_SKEW_SECONDS = 60 * 5


def validate_meta_signature(
    payload: bytes,
    signature_header: str | None,
    app_secret: str,
) -> bool:
    """
    Validate a Meta (WhatsApp Cloud, Messenger, Instagram) webhook signature.

    Args:
        payload: Raw request body bytes
        signature_header: X-Hub-Signature-256 header value
        app_secret: Meta App Secret

    Returns:
        True if signature is valid
    """
    if not signature_header:
        logger.warning("Missing signature header")
        return False

    if not signature_header.startswith("sha256="):
        logger.warning("Invalid signature format")
        return False

    computed = hmac.new(app_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature_header[7:])


def validate_slack_signature(
    payload: bytes,
    timestamp: str | None,
    signature_header: str | None,
    signing_secret: str,
    now: float | None = None,
) -> bool:
    """
    Validate a Slack request signature (v0 scheme).

    Requests older than five minutes are rejected to block replays.
    """
    if not timestamp or not signature_header:
        logger.warning("Missing Slack signature headers")
        return False

    try:
        sent_at = int(timestamp)
    except ValueError:
        return False

    current = now if now is not None else time.time()
    if abs(current - sent_at) > SLACK_MAX_CLOCK_SKEW_SECONDS:
        logger.warning("Stale Slack request timestamp", extra={"timestamp": timestamp})
        return False

    basestring = b"v0:" + timestamp.encode("utf-8") + b":" + payload
    computed = "v0=" + hmac.new(signing_secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature_header)


def compute_twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """Twilio's signature: base64 HMAC-SHA1 of the URL followed by the sorted POST params."""
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_twilio_signature(
    url: str,
    params: Mapping[str, str],
    signature_header: str | None,
    auth_token: str,
) -> bool:
    """Validate an X-Twilio-Signature header."""
    if not signature_header or not url:
        logger.warning("Missing Twilio signature or request URL")
        return False
    return hmac.compare_digest(compute_twilio_signature(url, params, auth_token), signature_header)


def verify_meta_challenge(mode: str, token: str, challenge: str, verify_token: str) -> str | None:
    """Answer Meta's GET verification handshake: the challenge if the token matches, else None."""
    if mode == "subscribe" and verify_token and hmac.compare_digest(token, verify_token):
        logger.info("Webhook verification successful")
        return challenge

    logger.warning(f"Webhook verification failed: mode={mode}, token mismatch")
    return None
