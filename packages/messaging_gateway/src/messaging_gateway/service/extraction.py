"""
Quick message extraction from raw webhook payloads.

Used to address auto-reply requests: the reply target (a Telegram group chat,
a WhatsApp number without its channel prefix) can differ from the sender
identity the adapter stores.
"""

from dataclasses import asdict, dataclass
from typing import Any

from messaging_gateway.providers.base import Platform


@dataclass
class ExtractedMessageInfo:
    platform: str
    sender_id: str
    content: str
    message_id: str | None = None
    sender_name: str | None = None
    reply_to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _strip_channel(value: str) -> str:
    return value.split(":", 1)[1] if ":" in value else value


def _from_twilio(platform: Platform, payload: dict[str, Any]) -> ExtractedMessageInfo | None:
    sender = payload.get("From")
    if not sender:
        return None
    sender = _strip_channel(sender)
    return ExtractedMessageInfo(
        platform=platform.value,
        sender_id=sender,
        content=payload.get("Body", ""),
        message_id=payload.get("MessageSid") or payload.get("SmsSid"),
        sender_name=payload.get("ProfileName"),
        reply_to=sender,
    )


def _from_meta_whatsapp(payload: dict[str, Any]) -> ExtractedMessageInfo | None:
    try:
        value = payload["entry"][0]["changes"][0]["value"]
        message = value["messages"][0]
    except (KeyError, IndexError, TypeError):
        return None

    contacts = value.get("contacts") or [{}]
    return ExtractedMessageInfo(
        platform=Platform.WHATSAPP.value,
        sender_id=message.get("from", ""),
        content=(message.get("text") or {}).get("body", ""),
        message_id=message.get("id"),
        sender_name=(contacts[0].get("profile") or {}).get("name"),
        reply_to=message.get("from"),
    )


def _from_telegram(payload: dict[str, Any]) -> ExtractedMessageInfo | None:
    message = payload.get("message") or payload.get("edited_message")
    if not message:
        return None

    sender = message.get("from") or {}
    chat = message.get("chat") or {}
    chat_id = chat.get("id")
    return ExtractedMessageInfo(
        platform=Platform.TELEGRAM.value,
        sender_id=str(sender.get("id") or chat_id or ""),
        content=message.get("text", ""),
        message_id=str(message["message_id"]) if "message_id" in message else None,
        sender_name=sender.get("username") or sender.get("first_name"),
        reply_to=str(chat_id) if chat_id is not None else None,
    )


def _from_messenger(platform: Platform, payload: dict[str, Any]) -> ExtractedMessageInfo | None:
    try:
        event = payload["entry"][0]["messaging"][0]
    except (KeyError, IndexError, TypeError):
        return None

    sender_id = (event.get("sender") or {}).get("id")
    message = event.get("message") or {}
    if not sender_id or not message:
        return None
    return ExtractedMessageInfo(
        platform=platform.value,
        sender_id=sender_id,
        content=message.get("text", ""),
        message_id=message.get("mid"),
        reply_to=sender_id,
    )


def extract_message_info(platform: Platform | str, payload: dict[str, Any]) -> ExtractedMessageInfo | None:
    """
    Pull sender, text and id out of a raw webhook payload.

    Returns:
        Extracted info, None for unsupported platforms or payload shapes
    """
    try:
        platform = Platform(platform)
    except ValueError:
        return None

    if platform in (Platform.WHATSAPP, Platform.SMS) and "From" in payload:
        return _from_twilio(platform, payload)
    if platform == Platform.WHATSAPP:
        return _from_meta_whatsapp(payload)
    if platform == Platform.TELEGRAM:
        return _from_telegram(payload)
    if platform in (Platform.FACEBOOK, Platform.INSTAGRAM):
        return _from_messenger(platform, payload)
    return None
