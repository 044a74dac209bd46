from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import WaInstance, WaMessage
from app.services.case_service import add_timeline_event
from app.services.phone_service import looks_like_group_id, normalize_contact_id, to_zapi_recipient
from app.services.result import Result

logger = get_logger("outbound_service")

SEND_ENDPOINTS = {
    "text": "send-text",
    "image": "send-image",
    "audio": "send-audio",
    "video": "send-video",
    "document": "send-document/pdf",
    "location": "send-location",
}


@dataclass
class DeliveryAttempt:
    status: str  # sent, prepared, failed
    http_status: Optional[int] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


def build_send_url(instance: WaInstance, message_type: str) -> Optional[str]:
    endpoint = SEND_ENDPOINTS.get(message_type)
    if not endpoint or not instance.zapi_instance_id or not instance.zapi_token:
        return None
    base = settings.zapi_domain.rstrip("/")
    return f"{base}/instances/{instance.zapi_instance_id}/token/{instance.zapi_token}/{endpoint}"


def build_send_body(
    message_type: str,
    recipient: str,
    *,
    text: Optional[str] = None,
    media_url: Optional[str] = None,
    location: Optional[dict] = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"phone": recipient}
    if message_type == "text":
        body["message"] = text or ""
    elif message_type == "location":
        location = location or {}
        body.update(
            {
                "latitude": location.get("lat"),
                "longitude": location.get("lng"),
                "title": location.get("name") or text or "",
                "address": location.get("address") or "",
            }
        )
    else:
        body[message_type] = media_url
        if text and message_type in ("image", "video", "document"):
            body["caption"] = text
    return body


def deliver_via_zapi(
    instance: WaInstance,
    message_type: str,
    recipient: str,
    *,
    text: Optional[str] = None,
    media_url: Optional[str] = None,
    location: Optional[dict] = None,
) -> DeliveryAttempt:
    """One bounded attempt against Z-API. Never raises."""
    url = build_send_url(instance, message_type)
    if not url:
        logger.warning(
            "Z-API credentials missing, message prepared but not sent",
            extra={"context": {"instance_id": str(instance.id), "type": message_type}},
        )
        return DeliveryAttempt(status="prepared", error="missing_credentials")

    headers = {"Content-Type": "application/json"}
    if settings.zapi_client_token:
        headers["Client-Token"] = settings.zapi_client_token
    body = build_send_body(message_type, recipient, text=text, media_url=media_url, location=location)

    try:
        with httpx.Client(timeout=settings.zapi_timeout_seconds) as client:
            response = client.post(url, json=body, headers=headers)
    except httpx.HTTPError as exc:
        logger.error(
            "Z-API send failed",
            extra={"context": {"instance_id": str(instance.id), "type": message_type, "error": str(exc)}},
        )
        return DeliveryAttempt(status="failed", error=str(exc))

    if response.status_code >= 400:
        logger.error(
            "Z-API send rejected",
            extra={
                "context": {
                    "instance_id": str(instance.id),
                    "status": response.status_code,
                    "body": response.text[:200],
                }
            },
        )
        return DeliveryAttempt(status="failed", http_status=response.status_code, error=response.text[:500])

    provider_id = None
    try:
        data = response.json()
        if isinstance(data, dict):
            provider_id = data.get("messageId") or data.get("zaapId") or data.get("id")
    except ValueError:
        pass
    logger.info(
        "Z-API message sent",
        extra={"context": {"instance_id": str(instance.id), "type": message_type, "status": response.status_code}},
    )
    return DeliveryAttempt(status="sent", http_status=response.status_code, provider_message_id=provider_id)


def send_message(
    db: Session,
    *,
    instance: WaInstance,
    to: str,
    message_type: str = "text",
    text: Optional[str] = None,
    media_url: Optional[str] = None,
    location: Optional[dict] = None,
    case_id=None,
    correlation_id: Optional[str] = None,
    meta: Optional[dict] = None,
) -> Result[WaMessage]:
    """Persist the outbound message, then attempt delivery and record the outcome.

    The row is flushed before any network call so the message exists even
    when delivery fails or credentials are missing.
    """
    if message_type not in SEND_ENDPOINTS:
        return Result.failure(f"Unsupported message type {message_type}", "unsupported_type")
    if message_type == "text" and not (text or "").strip():
        return Result.failure("Text message requires text", "missing_text")
    if message_type == "location" and not location:
        return Result.failure("Location message requires coordinates", "missing_location")
    if message_type not in ("text", "location") and not media_url:
        return Result.failure("Media message requires media_url", "missing_media_url")

    recipient = to_zapi_recipient(to)
    if not recipient:
        return Result.failure("Invalid recipient phone number", "invalid_recipient")

    to_phone = normalize_contact_id(to) or recipient
    message = WaMessage(
        id=uuid.uuid4(),
        tenant_id=instance.tenant_id,
        instance_id=instance.id,
        case_id=case_id,
        direction="outbound",
        type=message_type,
        from_phone=instance.phone_number,
        to_phone=to_phone,
        body_text=text,
        media_url=media_url,
        payload_json={"location": location, "meta": meta or {}, "is_group": looks_like_group_id(to)},
        correlation_id=correlation_id or f"send:{uuid.uuid4()}",
        delivery_status="pending",
        occurred_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()

    attempt = deliver_via_zapi(instance, message_type, recipient, text=text, media_url=media_url, location=location)
    message.delivery_status = attempt.status
    message.delivery_error = attempt.error
    message.payload_json = {
        **(message.payload_json or {}),
        "delivery": {
            "status": attempt.status,
            "http_status": attempt.http_status,
            "provider_message_id": attempt.provider_message_id,
            "attempted_at": datetime.now(timezone.utc).isoformat(),
        },
    }

    if case_id is not None:
        add_timeline_event(
            db,
            tenant_id=instance.tenant_id,
            case_id=case_id,
            event_type="message_send_failed" if attempt.status == "failed" else "message_sent",
            message=text,
            meta={"message_id": str(message.id), "delivery_status": attempt.status, "type": message_type},
        )
    return Result.success(message)


def find_recent_outbound_duplicate(
    db: Session,
    *,
    tenant_id,
    instance_id,
    to_phone: Optional[str],
    message_type: str,
    body_text: Optional[str],
    window_seconds: Optional[int] = None,
) -> Optional[WaMessage]:
    """Same recipient, type and body captured within the retry window."""
    window = window_seconds if window_seconds is not None else settings.outbound_dedup_window_seconds
    if window <= 0:
        return None
    since = datetime.now(timezone.utc) - timedelta(seconds=window)
    query = db.query(WaMessage).filter(
        WaMessage.tenant_id == tenant_id,
        WaMessage.instance_id == instance_id,
        WaMessage.direction == "outbound",
        WaMessage.type == message_type,
        WaMessage.to_phone == to_phone,
        WaMessage.occurred_at >= since,
    )
    if body_text is None:
        query = query.filter(WaMessage.body_text.is_(None))
    else:
        query = query.filter(WaMessage.body_text == body_text)
    return query.order_by(WaMessage.occurred_at.desc()).first()
