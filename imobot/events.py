"""Accessors for Evolution API webhook payloads.

Events stay plain dicts end to end; these helpers know where each field lives
and tolerate the partial shapes the gateway emits for receipts and reactions.
"""

from __future__ import annotations

import copy
import re
from enum import Enum
from typing import Any

from imobot.models import MediaPayload

_JID_DIGITS = re.compile(r"^(\d+)@")


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    OTHER = "other"


def _data(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data")
    return data if isinstance(data, dict) else {}


def _message(event: dict[str, Any]) -> dict[str, Any]:
    message = _data(event).get("message")
    return message if isinstance(message, dict) else {}


def extract_phone(event: dict[str, Any]) -> str | None:
    """Return the sender digits from ``<digits>@s.whatsapp.net`` or ``<digits>@lid``."""

    key = _data(event).get("key")
    if not isinstance(key, dict):
        return None
    remote_jid = key.get("remoteJid")
    if not isinstance(remote_jid, str):
        return None
    match = _JID_DIGITS.match(remote_jid)
    return match.group(1) if match else None


def extract_instance_id(event: dict[str, Any]) -> str:
    data = _data(event)
    for candidate in (data.get("instanceId"), data.get("instance"), event.get("instance")):
        if isinstance(candidate, str) and candidate:
            return candidate
    return ""


def extract_message_id(event: dict[str, Any]) -> str | None:
    key = _data(event).get("key")
    if isinstance(key, dict) and isinstance(key.get("id"), str):
        return key["id"]
    return None


def extract_push_name(event: dict[str, Any]) -> str | None:
    name = _data(event).get("pushName")
    return name.strip() if isinstance(name, str) and name.strip() else None


def extract_text(event: dict[str, Any]) -> str:
    """Return message text from whichever of the three text shapes is present."""

    message = _message(event)
    conversation = message.get("conversation")
    if isinstance(conversation, str) and conversation:
        return conversation
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and isinstance(extended.get("text"), str) and extended["text"]:
        return extended["text"]
    image = message.get("imageMessage")
    if isinstance(image, dict) and isinstance(image.get("caption"), str):
        return image["caption"]
    return ""


def message_kind(event: dict[str, Any]) -> MessageKind:
    message = _message(event)
    if message.get("imageMessage"):
        return MessageKind.IMAGE
    if message.get("audioMessage"):
        return MessageKind.AUDIO
    if message.get("conversation") or message.get("extendedTextMessage"):
        return MessageKind.TEXT
    return MessageKind.OTHER


def is_media(event: dict[str, Any]) -> bool:
    return message_kind(event) in (MessageKind.IMAGE, MessageKind.AUDIO)


def extract_media(event: dict[str, Any]) -> MediaPayload | None:
    """Return inline base64 media for image/audio events, if the gateway sent it."""

    kind = message_kind(event)
    if kind not in (MessageKind.IMAGE, MessageKind.AUDIO):
        return None
    message = _message(event)
    data_base64 = message.get("base64") or _data(event).get("base64")
    if not isinstance(data_base64, str) or not data_base64:
        return None
    body = message.get("imageMessage" if kind is MessageKind.IMAGE else "audioMessage")
    body = body if isinstance(body, dict) else {}
    default_mime = "image/jpeg" if kind is MessageKind.IMAGE else "audio/ogg"
    mime_type = body.get("mimetype") if isinstance(body.get("mimetype"), str) else default_mime
    caption = body.get("caption") if isinstance(body.get("caption"), str) else None
    # Gateway mimetypes may carry codec parameters ("audio/ogg; codecs=opus").
    return MediaPayload(data_base64=data_base64, mime_type=mime_type.split(";")[0].strip(), caption=caption)


def with_text(event: dict[str, Any], text: str) -> dict[str, Any]:
    """Deep-copy ``event`` and overwrite its text field with ``text``."""

    merged = copy.deepcopy(event)
    data = merged.setdefault("data", {})
    message = data.get("message")
    if not isinstance(message, dict):
        data["message"] = {"conversation": text}
        return merged
    if message.get("conversation"):
        message["conversation"] = text
    elif isinstance(message.get("extendedTextMessage"), dict):
        message["extendedTextMessage"]["text"] = text
    else:
        message["conversation"] = text
    return merged


def is_from_me(event: dict[str, Any]) -> bool:
    """True for messages the connected instance sent itself."""

    key = _data(event).get("key")
    return isinstance(key, dict) and key.get("fromMe") is True
