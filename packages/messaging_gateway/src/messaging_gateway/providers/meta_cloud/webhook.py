"""
Meta Webhook Utilities

Helper functions for WhatsApp Cloud API and Messenger/Instagram webhooks.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)


def is_whatsapp_business_webhook(payload: dict[str, Any]) -> bool:
    return payload.get("object") == "whatsapp_business_account"


def change_phone_number_id(change: dict[str, Any]) -> str | None:
    """phone_number_id a single WhatsApp Cloud change was delivered to."""
    phone_number_id = (change.get("value") or {}).get("metadata", {}).get("phone_number_id")
    return str(phone_number_id) if phone_number_id else None


def extract_phone_number_id(payload: dict[str, Any]) -> str | None:
    """
    Extract phone_number_id from a WhatsApp Cloud webhook payload.

    This is used for tenant resolution before full parsing. Deliveries that
    mix several phone numbers return None, like ``extract_page_id``.
    """
    phone_number_ids: set[str] = set()
    try:
        for entry in payload.get("entry", []):
            for change in entry.get("changes", []):
                phone_number_id = change_phone_number_id(change)
                if phone_number_id:
                    phone_number_ids.add(phone_number_id)
    except (AttributeError, TypeError):
        logger.debug("Malformed WhatsApp Cloud webhook payload")
        return None

    if len(phone_number_ids) != 1:
        return None
    return phone_number_ids.pop()


def extract_page_id(payload: dict[str, Any]) -> str | None:
    """
    Extract the page (or Instagram account) id a Messenger webhook was sent to.

    All entries of one delivery must belong to the same page; mixed deliveries
    return None so they are never attributed to a single tenant.
    """
    try:
        page_ids = {str(entry.get("id")) for entry in payload.get("entry", []) if entry.get("id")}
    except (AttributeError, TypeError):
        logger.debug("Malformed Messenger webhook payload")
        return None

    if len(page_ids) != 1:
        return None
    return page_ids.pop()
