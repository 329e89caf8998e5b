"""Normalize Meta webhook payloads into one canonical event shape.

Messenger and Instagram deliver chat events under ``entry[].messaging[]``,
Instagram (Instagram Login) and WhatsApp Cloud nest them under
``entry[].changes[].value`` and lead ads arrive as ``changes`` with
``field == "leadgen"``. Everything downstream only sees ``NormalizedEvent``.

The normalizer never raises: shapes it does not understand yield no events.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from crm_automation.logging_config import get_logger
from crm_automation.schemas.events import (
    DeliveryEvent,
    LeadgenEvent,
    MessageEvent,
    NormalizedEvent,
    PostbackEvent,
    ReadEvent,
)

logger = get_logger("event_normalizer")

_OBJECT_CHANNELS = {
    "page": "facebook",
    "instagram": "instagram",
    "whatsapp_business_account": "whatsapp",
}


def _as_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds or milliseconds (int or numeric string) to aware UTC."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return None
    if number <= 0:
        return None
    if number > 1e12:
        number = number / 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _text_of(message: dict) -> Optional[str]:
    text = message.get("text")
    if isinstance(text, dict):
        return _as_str(text.get("body"))
    return _as_str(text)


def _from_messaging(item: dict, source_id: Optional[str], channel: str) -> list:
    sender_id = _as_str(_as_dict(item.get("sender")).get("id"))
    recipient_id = _as_str(_as_dict(item.get("recipient")).get("id"))
    timestamp = parse_timestamp(item.get("timestamp"))
    common = {
        "source_id": source_id,
        "channel": channel,
        "sender_id": sender_id,
        "recipient_id": recipient_id,
        "timestamp": timestamp,
        "raw_payload": item,
    }

    message = item.get("message")
    if isinstance(message, dict):
        if message.get("is_echo"):
            return []
        return [
            MessageEvent(
                **common,
                message_id=_as_str(message.get("mid") or message.get("id")),
                text=_text_of(message),
                external_thread_id=_as_str(item.get("thread_id")),
            )
        ]

    postback = item.get("postback")
    if isinstance(postback, dict):
        return [
            PostbackEvent(
                **common,
                message_id=_as_str(postback.get("mid")),
                text=_as_str(postback.get("title")),
                payload=_as_str(postback.get("payload")),
            )
        ]

    delivery = item.get("delivery")
    if isinstance(delivery, dict):
        mids = [mid for mid in (_as_str(m) for m in _as_list(delivery.get("mids"))) if mid]
        return [DeliveryEvent(**common, message_ids=mids, watermark=parse_timestamp(delivery.get("watermark")))]

    read = item.get("read")
    if isinstance(read, dict):
        mid = _as_str(read.get("mid"))
        return [
            ReadEvent(
                **common,
                message_ids=[mid] if mid else [],
                watermark=parse_timestamp(read.get("watermark")),
            )
        ]

    return []


def _from_whatsapp_value(value: dict, source_id: Optional[str]) -> list:
    events: list = []
    phone_number_id = _as_str(_as_dict(value.get("metadata")).get("phone_number_id"))

    for message in _as_list(value.get("messages")):
        if not isinstance(message, dict):
            continue
        text = _text_of(message)
        if text is None:
            # interactive replies carry the visible title
            interactive = _as_dict(message.get("interactive"))
            reply = _as_dict(interactive.get("button_reply")) or _as_dict(interactive.get("list_reply"))
            text = _as_str(reply.get("title")) or _as_str(_as_dict(message.get("button")).get("text"))
        events.append(
            MessageEvent(
                source_id=source_id,
                channel="whatsapp",
                sender_id=_as_str(message.get("from")),
                recipient_id=phone_number_id,
                message_id=_as_str(message.get("id")),
                text=text,
                timestamp=parse_timestamp(message.get("timestamp")),
                raw_payload=message,
            )
        )

    for status in _as_list(value.get("statuses")):
        if not isinstance(status, dict):
            continue
        mid = _as_str(status.get("id"))
        common = {
            "source_id": source_id,
            "channel": "whatsapp",
            "recipient_id": _as_str(status.get("recipient_id")),
            "message_id": mid,
            "timestamp": parse_timestamp(status.get("timestamp")),
            "message_ids": [mid] if mid else [],
            "raw_payload": status,
        }
        state = _as_str(status.get("status"))
        if state == "delivered":
            events.append(DeliveryEvent(**common))
        elif state == "read":
            events.append(ReadEvent(**common))

    return events


def _from_instagram_value(value: dict, source_id: Optional[str]) -> list:
    if any(key in value for key in ("message", "postback", "read", "delivery")):
        return _from_messaging(value, source_id, "instagram")

    events: list = []
    for message in _as_list(value.get("messages")):
        if not isinstance(message, dict):
            continue
        sender = message.get("from")
        sender_id = _as_str(_as_dict(sender).get("id")) if isinstance(sender, dict) else _as_str(sender)
        events.append(
            MessageEvent(
                source_id=source_id,
                channel="instagram",
                sender_id=sender_id,
                recipient_id=_as_str(_as_dict(message.get("to")).get("id")),
                message_id=_as_str(message.get("mid") or message.get("id")),
                text=_text_of(message),
                timestamp=parse_timestamp(message.get("timestamp")),
                raw_payload=message,
            )
        )
    return events


def _from_change(change: dict, source_id: Optional[str], channel: str) -> list:
    field = _as_str(change.get("field"))
    value = _as_dict(change.get("value"))
    if not value:
        return []

    if field == "leadgen":
        leadgen_id = _as_str(value.get("leadgen_id"))
        if not leadgen_id:
            return []
        return [
            LeadgenEvent(
                source_id=source_id,
                channel=channel,
                leadgen_id=leadgen_id,
                message_id=leadgen_id,
                form_id=_as_str(value.get("form_id")),
                page_id=_as_str(value.get("page_id")) or source_id,
                timestamp=parse_timestamp(value.get("created_time")),
                raw_payload=value,
            )
        ]

    if channel == "whatsapp" or value.get("messaging_product") == "whatsapp":
        return _from_whatsapp_value(value, source_id)

    if channel == "instagram":
        return _from_instagram_value(value, source_id)

    return []


def normalize_webhook_event(raw_payload: Any) -> list[NormalizedEvent]:
    """Map a raw provider payload to canonical events. Never raises."""
    try:
        return _normalize(raw_payload)
    except Exception as exc:
        logger.warning(
            "Unrecognized webhook payload",
            extra={"context": {"error": str(exc)}},
        )
        return []


def _normalize(raw_payload: Any) -> list[NormalizedEvent]:
    payload = _as_dict(raw_payload)
    channel = _OBJECT_CHANNELS.get(_as_str(payload.get("object")) or "")
    if channel is None:
        return []

    events: list[NormalizedEvent] = []
    for entry in _as_list(payload.get("entry")):
        if not isinstance(entry, dict):
            continue
        source_id = _as_str(entry.get("id"))

        for item in _as_list(entry.get("messaging")):
            if isinstance(item, dict):
                events.extend(_safe(_from_messaging, item, source_id, channel))

        for change in _as_list(entry.get("changes")):
            if isinstance(change, dict):
                events.extend(_safe(_from_change, change, source_id, channel))

    return events


def _safe(builder, item: dict, source_id: Optional[str], channel: str) -> list:
    try:
        return builder(item, source_id, channel)
    except (ValidationError, TypeError, ValueError) as exc:
        logger.info(
            "Skipped malformed webhook item",
            extra={"context": {"channel": channel, "error": str(exc)}},
        )
        return []
