"""Canonical view of a WhatsApp provider webhook payload.

Every logical field is looked up through an ordered list of candidate paths
(dotted keys into the payload). Supporting another provider shape means adding
candidates here, not new branches in the pipeline. Nothing in this module
raises: missing or ambiguous values come back as None.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from app.services.phone_service import looks_like_group_id, normalize_group_id, normalize_phone_e164_like

INSTANCE_ID_PATHS = ("instanceId", "instance_id", "instance.id", "instance", "data.instanceId")
RAW_TYPE_PATHS = ("messageType", "data.messageType", "message.type", "data.type", "type", "event", "hookType")
FROM_PATHS = ("from", "data.from", "phone", "sender.phone", "data.sender.phone", "chatId", "senderId")
TO_PATHS = ("to", "data.to", "toPhone", "connectedPhone", "data.connectedPhone")
PARTICIPANT_PATHS = (
    "participantPhone",
    "participant",
    "data.participant",
    "author",
    "data.author",
    "sender.phone",
    "senderPhone",
)
CHAT_ID_PATHS = ("chatId", "data.chatId", "phone", "from", "data.from")
TEXT_PATHS = (
    "text.message",
    "data.text.message",
    "message.text",
    "message.conversation",
    "text",
    "body",
    "data.text",
    "data.body",
    "message",
    "data.message",
    "caption",
    "image.caption",
    "video.caption",
    "document.caption",
)
MEDIA_URL_PATHS = (
    "image.imageUrl",
    "audio.audioUrl",
    "video.videoUrl",
    "document.documentUrl",
    "sticker.stickerUrl",
    "mediaUrl",
    "media_url",
    "data.mediaUrl",
    "data.media_url",
    "url",
    "data.url",
)
MIME_PATHS = (
    "image.mimeType",
    "audio.mimeType",
    "video.mimeType",
    "document.mimeType",
    "mimeType",
    "mimetype",
    "data.mimeType",
)
MESSAGE_ID_PATHS = ("messageId", "message_id", "data.messageId", "data.id", "key.id", "id")
TIMESTAMP_PATHS = ("momment", "moment", "timestamp", "data.timestamp", "messageTimestamp")
FROM_ME_PATHS = ("fromMe", "isFromMe", "from_me", "data.fromMe", "data.isFromMe", "key.fromMe")
IS_GROUP_PATHS = ("isGroup", "isGroupMsg", "data.isGroup", "data.isGroupMsg")
LOCATION_CONTAINER_PATHS = ("location", "data.location", "message.location")

TYPE_KEYWORDS = (
    ("location", ("location", "geo")),
    ("image", ("image", "photo", "sticker")),
    ("audio", ("audio", "ptt", "voice")),
    ("video", ("video", "gif")),
    ("document", ("document", "pdf", "file")),
    ("text", ("text", "chat", "conversation")),
)
TYPE_CONTAINERS = (
    ("image", "image"),
    ("audio", "audio"),
    ("video", "video"),
    ("document", "document"),
    ("sticker", "image"),
)

CALL_TYPE_MARKERS = {
    "call",
    "calls",
    "call_offer",
    "call_accept",
    "call_reject",
    "call_terminate",
    "call_log",
    "call_event",
    "callevent",
    "received_call",
    "missed_call",
    "incoming_call",
    "voice_call",
    "video_call",
}
CALL_WORD = re.compile(r"(?:^|[^a-z])call(?:s)?(?:[^a-z]|$)")

STATUS_CALLBACK_TYPES = {
    "messagestatuscallback": "status",
    "deliverycallback": "delivery",
    "readcallback": "read",
    "presencechatcallback": "presence",
    "connectedcallback": "connection",
    "disconnectedcallback": "connection",
    "message_status": "status",
    "message-status": "status",
    "ack": "receipt",
}

MESSAGE_CALLBACK_TYPES = {"receivedcallback", "sentcallback"}


@dataclass
class Location:
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None

    def as_json(self) -> dict:
        data = {"lat": self.latitude, "lng": self.longitude}
        if self.name:
            data["name"] = self.name
        if self.address:
            data["address"] = self.address
        return data


@dataclass
class NormalizedMessage:
    zapi_instance_id: Optional[str] = None
    type: str = "text"
    raw_type: Optional[str] = None
    from_id: Optional[str] = None
    to_id: Optional[str] = None
    participant_phone: Optional[str] = None
    is_group: bool = False
    from_me: Optional[bool] = None
    text: Optional[str] = None
    media_url: Optional[str] = None
    mime_type: Optional[str] = None
    location: Optional[Location] = None
    external_message_id: Optional[str] = None
    timestamp: Optional[int] = None
    is_call_event: bool = False
    callback_kind: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_status_callback(self) -> bool:
        return self.callback_kind is not None


def get_path(payload: Any, path: str) -> Any:
    current = payload
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def pick_first(payload: Any, paths: Iterable[str], *, scalar: bool = True) -> Any:
    """First non-empty value among ``paths``; containers are skipped when ``scalar``."""
    for path in paths:
        value = get_path(payload, path)
        if value is None:
            continue
        if isinstance(value, str):
            if not value.strip():
                continue
            return value.strip()
        if scalar and isinstance(value, (dict, list)):
            continue
        return value
    return None


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    return None


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _coerce_timestamp(value: Any) -> Optional[int]:
    number = _coerce_float(value)
    if number is None or number <= 0:
        return None
    # Z-API sends milliseconds in "momment"
    if number > 1e12:
        number = number / 1000
    return int(number)


def _type_from_keyword(raw_type: Optional[str]) -> Optional[str]:
    if not raw_type:
        return None
    lowered = raw_type.lower()
    for message_type, keywords in TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return message_type
    return None


def _type_from_mime(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    lowered = mime_type.lower()
    for prefix in ("image", "audio", "video"):
        if lowered.startswith(f"{prefix}/"):
            return prefix
    if lowered.startswith("application/") or lowered.startswith("text/"):
        return "document"
    return None


def infer_message_type(payload: dict, raw_type: Optional[str] = None, mime_type: Optional[str] = None) -> str:
    """Explicit type field, then MIME sniffing, then type-specific containers, then text."""
    explicit = _type_from_keyword(raw_type)
    if explicit:
        return explicit
    sniffed = _type_from_mime(mime_type)
    if sniffed:
        return sniffed
    if extract_location(payload) is not None:
        return "location"
    for container, message_type in TYPE_CONTAINERS:
        if isinstance(payload.get(container), dict) or isinstance(get_path(payload, f"data.{container}"), dict):
            return message_type
    return "text"


def detect_call_event(payload: dict) -> bool:
    """True only on strong evidence that the payload is a voice/video call.

    Exact call markers in a type field, nested call objects, call ids or a
    ``CALL_*`` notification each count as strong. A loose "call" word in a
    type field only counts together with another signal, and substrings such
    as "callback" never count.
    """
    score = 0
    for path in ("type", "event", "messageType", "data.type", "hookType"):
        value = get_path(payload, path)
        if not isinstance(value, str):
            continue
        lowered = value.strip().lower()
        if lowered in CALL_TYPE_MARKERS:
            score += 2
        elif CALL_WORD.search(lowered.replace("-", "_")):
            score += 1

    notification = pick_first(payload, ("notification", "data.notification"))
    if isinstance(notification, str) and notification.upper().startswith("CALL_"):
        score += 2

    for path in ("call", "data.call", "callEvent"):
        if isinstance(get_path(payload, path), dict):
            score += 2
    if pick_first(payload, ("callId", "call_id", "data.callId")):
        score += 2
    if _coerce_bool(pick_first(payload, ("isCall", "is_call"))):
        score += 2

    return score >= 2


def detect_non_message_callback(payload: dict) -> Optional[str]:
    """Kind of provider notification that carries no user content, or None."""
    raw_type = pick_first(payload, ("type", "event", "hookType"))
    if isinstance(raw_type, str):
        lowered = raw_type.strip().lower()
        if lowered in STATUS_CALLBACK_TYPES:
            return STATUS_CALLBACK_TYPES[lowered]
        if lowered in MESSAGE_CALLBACK_TYPES:
            return None

    has_content = any(
        pick_first(payload, paths) is not None for paths in (TEXT_PATHS, MEDIA_URL_PATHS)
    ) or extract_location(payload) is not None
    if has_content:
        return None

    if isinstance(payload.get("ids"), list) and payload.get("status"):
        return "status"
    if payload.get("ack") is not None:
        return "receipt"
    # a bare status on a single message id is a message without extractable content
    if payload.get("messageId") is not None:
        return None
    if isinstance(payload.get("status"), str) and payload["status"].upper() in {
        "SENT",
        "RECEIVED",
        "READ",
        "READ_BY_ME",
        "PLAYED",
        "DELIVERED",
    }:
        return "status"
    return None


def extract_location(payload: dict) -> Optional[Location]:
    container = None
    for path in LOCATION_CONTAINER_PATHS:
        value = get_path(payload, path)
        if isinstance(value, dict):
            container = value
            break
    source = container if container is not None else payload
    lat = _coerce_float(pick_first(source, ("latitude", "lat", "degreesLatitude")))
    lng = _coerce_float(pick_first(source, ("longitude", "lng", "lon", "degreesLongitude")))
    if lat is None or lng is None:
        if container is None:
            lat = _coerce_float(pick_first(payload, ("data.latitude",)))
            lng = _coerce_float(pick_first(payload, ("data.longitude",)))
        if lat is None or lng is None:
            return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    name = pick_first(source, ("name", "title"))
    address = pick_first(source, ("address",))
    return Location(latitude=lat, longitude=lng, name=name, address=address)


def _extract_text(payload: dict) -> Optional[str]:
    value = pick_first(payload, TEXT_PATHS)
    if value is None or isinstance(value, bool):
        return None
    return str(value)


def normalize_inbound_payload(payload: Any) -> NormalizedMessage:
    if not isinstance(payload, dict):
        return NormalizedMessage()

    raw_type = pick_first(payload, RAW_TYPE_PATHS)
    raw_type = str(raw_type) if raw_type is not None else None
    mime_type = pick_first(payload, MIME_PATHS)
    message_type = infer_message_type(payload, raw_type, mime_type)

    from_raw = pick_first(payload, FROM_PATHS)
    chat_raw = pick_first(payload, CHAT_ID_PATHS)
    is_group = (
        bool(_coerce_bool(pick_first(payload, IS_GROUP_PATHS)))
        or looks_like_group_id(from_raw)
        or looks_like_group_id(chat_raw)
    )

    if is_group:
        group_raw = chat_raw if looks_like_group_id(chat_raw) else from_raw
        from_id = normalize_group_id(group_raw)
        participant_phone = normalize_phone_e164_like(pick_first(payload, PARTICIPANT_PATHS))
    else:
        from_id = normalize_phone_e164_like(from_raw)
        participant_phone = None

    to_raw = pick_first(payload, TO_PATHS)
    to_id = normalize_group_id(to_raw) if looks_like_group_id(to_raw) else normalize_phone_e164_like(to_raw)

    external_id = pick_first(payload, MESSAGE_ID_PATHS)
    instance_id = pick_first(payload, INSTANCE_ID_PATHS)

    normalized = NormalizedMessage(
        zapi_instance_id=str(instance_id) if instance_id is not None else None,
        type=message_type,
        raw_type=raw_type,
        from_id=from_id,
        to_id=to_id,
        participant_phone=participant_phone,
        is_group=is_group,
        from_me=_coerce_bool(pick_first(payload, FROM_ME_PATHS)),
        text=_extract_text(payload),
        media_url=pick_first(payload, MEDIA_URL_PATHS),
        mime_type=mime_type,
        location=extract_location(payload),
        external_message_id=str(external_id) if external_id is not None else None,
        timestamp=_coerce_timestamp(pick_first(payload, TIMESTAMP_PATHS)),
        is_call_event=detect_call_event(payload),
        callback_kind=detect_non_message_callback(payload),
    )
    if normalized.type == "location" and normalized.location is None:
        normalized.type = "text"
    return normalized
