"""Webhook ingestion pipeline.

Every call ends in exactly one ``wa_webhook_inbox`` row, whatever the
outcome. A delivery is deduplicated by its correlation id: Redis is an
optional fast path, the ``wa_messages`` unique index is authoritative.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import LoggerAdapter, get_logger
from app.models import WaInstance, WaMessage, WebhookInbox
from app.services.case_service import (
    AUDIO_PLACEHOLDER,
    add_timeline_event,
    apply_inbound_event,
    ensure_case,
    link_outbound_message,
)
from app.services.identity_service import (
    OUTBOUND,
    DirectionDecision,
    Endpoints,
    resolve_direction,
    resolve_endpoints,
    resolve_sender_identity,
)
from app.services.instance_service import resolve_instance, verify_secret
from app.services.journey_service import select_journey
from app.services.normalize_service import NormalizedMessage, normalize_inbound_payload
from app.services.outbound_service import find_recent_outbound_duplicate
from app.services.presence_command_service import handle_presence_message

logger = get_logger("ingest_service")

_redis_client = None
_redis_url = None
REDIS_SOCKET_TIMEOUT_SECONDS = 0.3


@dataclass
class InboxTrail:
    """What is known about the call so far; written to the inbox at the end."""

    zapi_instance_id: Optional[str] = None
    tenant_id: Any = None
    instance_id: Any = None
    direction: Optional[str] = None
    wa_type: Optional[str] = None
    from_phone: Optional[str] = None
    to_phone: Optional[str] = None
    correlation_id: Optional[str] = None
    journey_id: Any = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestOutcome:
    http_status: int
    body: dict[str, Any]
    dedup_key: Optional[str] = None


def build_correlation_id(
    external_id: Optional[str],
    chat_id: Optional[str],
    timestamp: Optional[int],
    text: Optional[str],
) -> str:
    if external_id and str(external_id).strip():
        return str(external_id).strip()
    if chat_id and timestamp is not None:
        return f"{chat_id}:{timestamp}"
    if chat_id and text:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
        return f"{chat_id}:{digest}"
    return str(uuid.uuid4())


def dedup_key_for(instance_id, direction: str, correlation_id: str) -> str:
    return f"byfrost:dedup:{instance_id}:{direction}:{correlation_id}"


def _get_redis():
    global _redis_client, _redis_url
    if not settings.redis_url:
        return None
    if _redis_client is None or _redis_url != settings.redis_url:
        _redis_url = settings.redis_url
        _redis_client = redis_async.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    return _redis_client


async def is_recent_duplicate(key: str, redis_client=None) -> bool:
    redis_client = redis_client or _get_redis()
    if redis_client is None:
        return False
    try:
        return bool(await redis_client.exists(key))
    except (RedisError, OSError) as exc:
        logger.warning("Dedup redis unavailable, falling back to DB", extra={"context": {"error": str(exc)}})
        return False


async def remember_delivery(key: Optional[str], redis_client=None) -> None:
    """Mark a committed delivery so retries short-circuit before touching the DB."""
    if not key:
        return
    redis_client = redis_client or _get_redis()
    if redis_client is None:
        return
    try:
        await redis_client.set(key, "1", ex=settings.dedup_ttl_seconds)
    except (RedisError, OSError) as exc:
        logger.warning("Dedup redis write failed", extra={"context": {"error": str(exc)}})


def write_inbox(
    db: Session,
    trail: InboxTrail,
    payload: Any,
    *,
    ok: bool,
    http_status: int,
    reason: str,
) -> WebhookInbox:
    row = WebhookInbox(
        tenant_id=trail.tenant_id,
        instance_id=trail.instance_id,
        zapi_instance_id=trail.zapi_instance_id,
        direction=trail.direction,
        wa_type=trail.wa_type,
        from_phone=trail.from_phone,
        to_phone=trail.to_phone,
        ok=ok,
        http_status=http_status,
        reason=reason,
        correlation_id=trail.correlation_id,
        payload_json=payload if isinstance(payload, dict) else {"raw": payload},
        journey_id=trail.journey_id,
        meta_json=trail.meta,
    )
    db.add(row)
    return row


def _finish(
    db: Session,
    trail: InboxTrail,
    payload: Any,
    *,
    http_status: int,
    reason: str,
    ok: bool = True,
    dedup_key: Optional[str] = None,
    **extra: Any,
) -> IngestOutcome:
    write_inbox(db, trail, payload, ok=ok, http_status=http_status, reason=reason)
    body: dict[str, Any] = {"ok": ok, "reason": reason, **extra}
    if not ok:
        body["error"] = extra.get("error") or reason
    return IngestOutcome(http_status=http_status, body=body, dedup_key=dedup_key)


def find_existing_message(db: Session, *, tenant_id, instance_id, direction: str, correlation_id: str) -> Optional[WaMessage]:
    return (
        db.query(WaMessage)
        .filter(
            WaMessage.tenant_id == tenant_id,
            WaMessage.instance_id == instance_id,
            WaMessage.direction == direction,
            WaMessage.correlation_id == correlation_id,
        )
        .first()
    )


def _occurred_at(normalized: NormalizedMessage) -> datetime:
    if normalized.timestamp:
        return datetime.fromtimestamp(normalized.timestamp, tz=timezone.utc)
    return datetime.now(timezone.utc)


def store_message(
    db: Session,
    *,
    instance: WaInstance,
    normalized: NormalizedMessage,
    decision: DirectionDecision,
    endpoints: Endpoints,
    correlation_id: str,
    payload: dict,
) -> Optional[WaMessage]:
    """Insert the message; None when the unique index says it was already stored."""
    body_text = normalized.text
    if normalized.type == "audio" and not body_text:
        body_text = AUDIO_PLACEHOLDER
    message = WaMessage(
        id=uuid.uuid4(),
        tenant_id=instance.tenant_id,
        instance_id=instance.id,
        direction=decision.direction,
        type=normalized.type,
        from_phone=endpoints.from_phone,
        to_phone=endpoints.to_phone,
        body_text=body_text,
        media_url=normalized.media_url,
        payload_json={
            "raw": payload,
            "is_group": normalized.is_group,
            "participant_phone": normalized.participant_phone,
            "location": normalized.location.as_json() if normalized.location else None,
            "direction_source": decision.source,
        },
        correlation_id=correlation_id,
        delivery_status="sent" if decision.direction == OUTBOUND else None,
        occurred_at=_occurred_at(normalized),
    )
    try:
        with db.begin_nested():
            db.add(message)
            db.flush()
    except IntegrityError:
        return None
    return message


def _capture_outbound(db, log, trail, payload, instance, normalized, decision, endpoints, correlation_id, dedup_key):
    near = find_recent_outbound_duplicate(
        db,
        tenant_id=instance.tenant_id,
        instance_id=instance.id,
        to_phone=endpoints.to_phone,
        message_type=normalized.type,
        body_text=normalized.text,
    )
    if near is not None:
        log.info("Outbound near-duplicate ignored", extra={"context": {"existing_message_id": str(near.id)}})
        return _finish(
            db, trail, payload, http_status=200, reason="duplicate_outbound_window", message_id=str(near.id)
        )

    message = store_message(
        db,
        instance=instance,
        normalized=normalized,
        decision=decision,
        endpoints=endpoints,
        correlation_id=correlation_id,
        payload=payload,
    )
    if message is None:
        return _finish(db, trail, payload, http_status=200, reason="duplicate", dedup_key=dedup_key)

    link = link_outbound_message(db, tenant_id=instance.tenant_id, message=message, chat_id=endpoints.chat_id)
    if message.case_id is not None:
        add_timeline_event(
            db,
            tenant_id=instance.tenant_id,
            case_id=message.case_id,
            event_type="outbound_captured",
            message=message.body_text,
            actor_type="system",
            meta={"message_id": str(message.id), "type": message.type},
        )
    trail.meta["link"] = link
    return _finish(
        db,
        trail,
        payload,
        http_status=200,
        reason="outbound_captured",
        dedup_key=dedup_key,
        message_id=str(message.id),
        case_id=str(message.case_id) if message.case_id else None,
        link=link,
    )


def _process_inbound(db, log, trail, payload, instance, normalized, decision, endpoints, correlation_id, dedup_key, now):
    message = store_message(
        db,
        instance=instance,
        normalized=normalized,
        decision=decision,
        endpoints=endpoints,
        correlation_id=correlation_id,
        payload=payload,
    )
    if message is None:
        return _finish(db, trail, payload, http_status=200, reason="duplicate", dedup_key=dedup_key)
    stored = {"dedup_key": dedup_key, "message_id": str(message.id)}

    if normalized.is_group:
        log.info("Group message stored for audit")
        return _finish(db, trail, payload, http_status=200, reason="group_audit", **stored)

    command = handle_presence_message(
        db, instance=instance, normalized=normalized, sender_phone=endpoints.sender_phone, now=now
    )
    if command is not None:
        trail.meta["presence"] = command.action
        log.info("Presence command handled", extra={"context": {"action": command.action}})
        return _finish(
            db,
            trail,
            payload,
            http_status=200,
            reason=f"presence_{command.action}",
            presence_error=command.error_code,
            case_id=str(command.punch.case.id) if command.punch else None,
            **stored,
        )

    if not instance.enable_v1_business:
        return _finish(db, trail, payload, http_status=200, reason="audit_only", **stored)

    sender = resolve_sender_identity(db, instance.tenant_id, endpoints.sender_phone)
    chosen = select_journey(db, instance.tenant_id, instance, sender)
    if not chosen.ok:
        return _finish(db, trail, payload, http_status=422, ok=False, reason=chosen.error_code, **stored)
    choice = chosen.value
    trail.journey_id = choice.journey.id
    trail.meta["routing_reason"] = choice.reason

    resolved = ensure_case(
        db,
        tenant_id=instance.tenant_id,
        instance=instance,
        choice=choice,
        sender=sender,
        chat_id=endpoints.chat_id,
        message_type=normalized.type,
    )
    if not resolved.ok:
        log.info("Message stored without case", extra={"context": {"reason": resolved.error_code}})
        return _finish(
            db, trail, payload, http_status=200, ok=False, reason=resolved.error_code, **stored, **resolved.details
        )

    resolution = resolved.value
    applied = apply_inbound_event(
        db,
        case=resolution.case,
        choice=choice,
        message=message,
        normalized=normalized,
        sender=sender,
        correlation_id=correlation_id,
    )
    log.info(
        "Inbound message processed",
        extra={
            "context": {
                "case_id": str(resolution.case.id),
                "journey_key": choice.journey.key,
                "created": resolution.created,
                "events": applied.events,
            }
        },
    )
    return _finish(
        db,
        trail,
        payload,
        http_status=200,
        reason="processed",
        case_id=str(resolution.case.id),
        journey_key=choice.journey.key,
        case_created=resolution.created,
        case_reactivated=resolution.reactivated,
        events=applied.events,
        **stored,
    )


async def process_webhook(
    db: Session,
    payload: Any,
    *,
    secret: Optional[str],
    forced_direction: Optional[str] = None,
    request_meta: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> IngestOutcome:
    """Authenticate, normalize, deduplicate and route one provider callback.

    Flushes but never commits. ``dedup_key`` on the outcome is set when the
    delivery should be remembered in Redis after the caller commits.
    """
    trail = InboxTrail(meta=dict(request_meta or {}))
    if not isinstance(payload, dict):
        return _finish(db, trail, payload, http_status=400, ok=False, reason="invalid_payload")

    normalized = normalize_inbound_payload(payload)
    trail.zapi_instance_id = normalized.zapi_instance_id
    trail.wa_type = normalized.type
    if not normalized.zapi_instance_id:
        return _finish(db, trail, payload, http_status=400, ok=False, reason="missing_instance_id")

    instance = resolve_instance(db, normalized.zapi_instance_id)
    if instance is None:
        logger.warning(
            "Webhook for unknown instance",
            extra={"context": {"zapi_instance_id": normalized.zapi_instance_id}},
        )
        return _finish(db, trail, payload, http_status=404, ok=False, reason="unknown_instance")
    trail.tenant_id = instance.tenant_id
    trail.instance_id = instance.id

    if not verify_secret(instance, secret):
        logger.warning(
            "Webhook secret rejected",
            extra={"context": {"instance_id": str(instance.id), "secret_source": trail.meta.get("secret_source")}},
        )
        return _finish(db, trail, payload, http_status=401, ok=False, reason="unauthorized")

    if normalized.is_call_event:
        return _finish(db, trail, payload, http_status=200, reason="ignored_call_event")
    if normalized.is_status_callback:
        trail.meta["callback_kind"] = normalized.callback_kind
        return _finish(db, trail, payload, http_status=200, reason="ignored_callback")

    decision = resolve_direction(payload, normalized, instance.phone_number, forced_direction)
    endpoints = resolve_endpoints(normalized, decision.direction, instance.phone_number)
    correlation_id = build_correlation_id(
        normalized.external_message_id, endpoints.chat_id, normalized.timestamp, normalized.text
    )
    trail.direction = decision.direction
    trail.from_phone = endpoints.from_phone
    trail.to_phone = endpoints.to_phone
    trail.correlation_id = correlation_id
    trail.meta["direction_source"] = decision.source
    if decision.forced_overridden:
        trail.meta["forced_direction_overridden"] = forced_direction

    log = LoggerAdapter(
        logger,
        {
            "correlation_id": correlation_id,
            "tenant_id": str(instance.tenant_id),
            "instance_id": str(instance.id),
            "direction": decision.direction,
        },
    )

    dedup_key = dedup_key_for(instance.id, decision.direction, correlation_id)
    if await is_recent_duplicate(dedup_key) or find_existing_message(
        db,
        tenant_id=instance.tenant_id,
        instance_id=instance.id,
        direction=decision.direction,
        correlation_id=correlation_id,
    ):
        log.info("Duplicate delivery ignored")
        return _finish(db, trail, payload, http_status=200, reason="duplicate")

    if decision.direction == OUTBOUND:
        return _capture_outbound(
            db, log, trail, payload, instance, normalized, decision, endpoints, correlation_id, dedup_key
        )
    return _process_inbound(
        db, log, trail, payload, instance, normalized, decision, endpoints, correlation_id, dedup_key, now
    )
