"""Case state engine: find-or-create the case for a message and apply it.

Writes go through the caller's session; nothing here commits. Races on case
creation are settled by the partial unique index on open cases: the insert
runs in a savepoint and a conflict re-selects the winner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

import httpx
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Case, CaseAttachment, CaseField, Journey, Pendency, TimelineEvent, WaInstance, WaMessage
from app.services import job_service
from app.services.identity_service import SenderIdentity, ensure_customer, ensure_vendor
from app.services.journey_service import (
    JourneyChoice,
    config_get,
    get_journey,
    is_valid_state,
    journey_states,
    resolve_initial_state,
)
from app.services.normalize_service import NormalizedMessage
from app.services.phone_service import brazil_phone_variants, canonical_brazil_phone, looks_like_group_id
from app.services.result import Result

logger = get_logger("case_service")

AUDIO_PLACEHOLDER = "(áudio recebido - transcrição pendente)"
CASE_CREATION_DEFAULTS = {
    "text": True,
    "image": True,
    "audio": True,
    "video": True,
    "document": True,
    "location": False,
}
NEED_LOCATION_QUESTION = "Envie a localização (pin) do cliente/entrega."
NEED_MORE_PAGES_QUESTION = "Tem mais alguma página deste pedido? Se sim, envie as próximas fotos."
IMAGE_NEXT_STATE = "awaiting_ocr"
LOCATION_NEXT_STATE = "ready_for_review"
ACTION_TIMEOUT_SECONDS = 10.0


@dataclass
class CaseResolution:
    case: Case
    created: bool = False
    reactivated: bool = False


@dataclass
class InboundApplication:
    events: list[str] = field(default_factory=list)
    answered_pendency_id: Optional[UUID] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def add_timeline_event(
    db: Session,
    *,
    tenant_id,
    case_id,
    event_type: str,
    message: Optional[str] = None,
    actor_type: str = "system",
    actor_id: Optional[Any] = None,
    meta: Optional[dict] = None,
) -> TimelineEvent:
    event = TimelineEvent(
        tenant_id=tenant_id,
        case_id=case_id,
        event_type=event_type,
        actor_type=actor_type,
        actor_id=str(actor_id) if actor_id is not None else None,
        message=message,
        meta_json=meta or {},
        occurred_at=_now(),
    )
    db.add(event)
    return event


def _chat_keys(chat_id: Optional[str]) -> list[str]:
    if not chat_id:
        return []
    if looks_like_group_id(chat_id):
        return [chat_id]
    return brazil_phone_variants(chat_id) or [chat_id]


def find_matching_case(
    db: Session,
    *,
    tenant_id,
    journey: Journey,
    sender: SenderIdentity,
    chat_id: Optional[str],
    deleted: bool = False,
) -> Optional[Case]:
    query = db.query(Case).filter(Case.tenant_id == tenant_id, Case.journey_id == journey.id)
    if deleted:
        query = query.filter(Case.deleted_at.isnot(None))
    else:
        query = query.filter(Case.status == "open", Case.deleted_at.is_(None))

    if journey.is_crm and sender.customer is not None:
        query = query.filter(Case.customer_id == sender.customer.id)
    elif not journey.is_crm and sender.vendor is not None:
        query = query.filter(Case.assigned_vendor_id == sender.vendor.id)
    else:
        keys = _chat_keys(chat_id)
        if not keys:
            return None
        query = query.filter(Case.counterpart_phone.in_(keys))

    order = Case.deleted_at.desc() if deleted else Case.updated_at.desc()
    return query.order_by(order).first()


def _find_open_by_counterpart(db: Session, tenant_id, journey_id, chat_id: Optional[str]) -> Optional[Case]:
    keys = _chat_keys(chat_id)
    if not keys:
        return None
    return (
        db.query(Case)
        .filter(
            Case.tenant_id == tenant_id,
            Case.journey_id == journey_id,
            Case.status == "open",
            Case.deleted_at.is_(None),
            Case.counterpart_phone.in_(keys),
        )
        .order_by(Case.updated_at.desc())
        .first()
    )


def can_create_case(config: Optional[dict], message_type: str) -> bool:
    default = CASE_CREATION_DEFAULTS.get(message_type, False)
    return bool(config_get(config, f"automation.create_case_on_{message_type}", default))


def _prepare_sender(db: Session, tenant_id, choice: JourneyChoice, sender: SenderIdentity) -> Result[SenderIdentity]:
    journey = choice.journey
    if journey.is_crm:
        if sender.customer is None and config_get(choice.config, "crm.auto_create_customer", True):
            sender.customer = ensure_customer(db, tenant_id, sender.phone)
        return Result.success(sender)

    if choice.is_vendor_journey and sender.vendor is None:
        if not sender.is_vendor and not config_get(choice.config, "vendor_identification.auto_create", True):
            return Result.failure("Sender is not a registered vendor", "unknown_vendor")
        name = sender.user_profile.display_name if sender.user_profile is not None else None
        sender.vendor = ensure_vendor(db, tenant_id, sender.phone, display_name=name)
    return Result.success(sender)


def ensure_case(
    db: Session,
    *,
    tenant_id,
    instance: WaInstance,
    choice: JourneyChoice,
    sender: SenderIdentity,
    chat_id: Optional[str],
    message_type: str,
) -> Result[CaseResolution]:
    """Reuse the sender's open case in the journey, reactivate a deleted one, or open a new one."""
    if not sender.phone or not chat_id:
        return Result.failure("Sender could not be identified", "no_identifiable_sender")

    prepared = _prepare_sender(db, tenant_id, choice, sender)
    if not prepared.ok:
        return prepared
    journey = choice.journey

    existing = find_matching_case(db, tenant_id=tenant_id, journey=journey, sender=sender, chat_id=chat_id)
    if existing is not None:
        return Result.success(CaseResolution(case=existing))

    deleted = find_matching_case(
        db, tenant_id=tenant_id, journey=journey, sender=sender, chat_id=chat_id, deleted=True
    )
    if deleted is not None:
        deleted.deleted_at = None
        deleted.status = "open"
        deleted.updated_at = _now()
        add_timeline_event(
            db,
            tenant_id=tenant_id,
            case_id=deleted.id,
            event_type="lead_reactivated",
            message="Caso reativado por nova mensagem",
            meta={"message_type": message_type},
        )
        logger.info(
            "Case reactivated",
            extra={"context": {"tenant_id": str(tenant_id), "case_id": str(deleted.id)}},
        )
        return Result.success(CaseResolution(case=deleted, reactivated=True))

    if not can_create_case(choice.config, message_type):
        return Result.failure(
            f"Case creation disabled for {message_type} messages",
            "case_creation_disabled",
            message_type=message_type,
        )

    initial_state = resolve_initial_state(journey, choice.config, message_type)
    vendor_id = sender.vendor.id if sender.vendor is not None and not journey.is_crm else None
    case = Case(
        tenant_id=tenant_id,
        journey_id=journey.id,
        case_type="crm" if journey.is_crm else journey.key,
        status="open",
        state=initial_state,
        title=f"WhatsApp {sender.phone}",
        created_by_channel="whatsapp",
        created_by_vendor_id=vendor_id,
        assigned_vendor_id=vendor_id,
        customer_id=sender.customer.id if journey.is_crm and sender.customer is not None else None,
        assigned_user_id=instance.assigned_user_id,
        counterpart_phone=chat_id if looks_like_group_id(chat_id) else canonical_brazil_phone(chat_id) or chat_id,
        meta_json={
            "instance_id": str(instance.id),
            "opened_by_type": message_type,
            "routing_reason": choice.reason,
        },
    )
    try:
        with db.begin_nested():
            db.add(case)
            db.flush()
    except IntegrityError:
        winner = _find_open_by_counterpart(db, tenant_id, journey.id, chat_id)
        if winner is None:
            raise
        logger.info(
            "Concurrent case open resolved to existing case",
            extra={"context": {"tenant_id": str(tenant_id), "case_id": str(winner.id)}},
        )
        return Result.success(CaseResolution(case=winner))

    add_timeline_event(
        db,
        tenant_id=tenant_id,
        case_id=case.id,
        event_type="case_opened",
        message=f"Caso aberto via WhatsApp ({message_type})",
        actor_type=sender.role,
        actor_id=sender.phone,
        meta={"journey_key": journey.key, "state": initial_state, "routing_reason": choice.reason},
    )
    logger.info(
        "Case opened",
        extra={
            "context": {
                "tenant_id": str(tenant_id),
                "case_id": str(case.id),
                "journey_key": journey.key,
                "state": initial_state,
            }
        },
    )
    return Result.success(CaseResolution(case=case, created=True))


def upsert_pendency(
    db: Session,
    *,
    case: Case,
    pendency_type: str,
    question_text: str,
    required: bool = True,
    assigned_to_role: str = "vendor",
    due_at: Optional[datetime] = None,
) -> tuple[Pendency, bool]:
    """Open pendency of this type for the case, created only when none is open."""
    existing = (
        db.query(Pendency)
        .filter(Pendency.case_id == case.id, Pendency.type == pendency_type, Pendency.status == "open")
        .first()
    )
    if existing is not None:
        return existing, False

    pendency = Pendency(
        tenant_id=case.tenant_id,
        case_id=case.id,
        type=pendency_type,
        assigned_to_role=assigned_to_role,
        question_text=question_text,
        required=required,
        status="open",
        due_at=due_at,
        created_at=_now(),
    )
    db.add(pendency)
    db.flush()
    add_timeline_event(
        db,
        tenant_id=case.tenant_id,
        case_id=case.id,
        event_type="pendency_created",
        message=question_text,
        meta={"type": pendency_type, "required": required, "role": assigned_to_role},
    )
    return pendency, True


def list_open_pendencies(db: Session, case_id, *, role: Optional[str] = None) -> list[Pendency]:
    query = db.query(Pendency).filter(Pendency.case_id == case_id, Pendency.status == "open")
    if role:
        query = query.filter(Pendency.assigned_to_role == role)
    return query.order_by(Pendency.created_at.asc()).all()


def answer_pendency(
    db: Session,
    pendency: Pendency,
    *,
    answered_text: Optional[str] = None,
    payload: Optional[dict] = None,
    status: str = "answered",
    actor_type: str = "system",
    actor_id: Optional[Any] = None,
) -> Pendency:
    pendency.status = status
    pendency.answered_text = answered_text
    pendency.answered_payload_json = payload
    pendency.answered_at = _now()
    add_timeline_event(
        db,
        tenant_id=pendency.tenant_id,
        case_id=pendency.case_id,
        event_type="pendency_answered" if status == "answered" else "pendency_waived",
        message=answered_text,
        actor_type=actor_type,
        actor_id=actor_id,
        meta={"pendency_id": str(pendency.id), "type": pendency.type},
    )
    return pendency


def resolve_pendency(
    db: Session, *, tenant_id, pendency_id, status: str, note: Optional[str], actor_id
) -> Result[Pendency]:
    """Administrative answer or waiver of a pendency."""
    if status not in ("answered", "waived"):
        return Result.failure("Status must be answered or waived", "invalid_status")
    pendency = (
        db.query(Pendency).filter(Pendency.id == pendency_id, Pendency.tenant_id == tenant_id).first()
    )
    if pendency is None:
        return Result.failure("Pendency not found", "pendency_not_found")
    if pendency.status != "open":
        return Result.failure("Pendency already resolved", "pendency_not_open", status=pendency.status)
    answer_pendency(db, pendency, answered_text=note, status=status, actor_type="admin", actor_id=actor_id)
    return Result.success(pendency)


def upsert_case_field(
    db: Session,
    *,
    case_id,
    key: str,
    value_text: Optional[str] = None,
    value_json: Optional[Any] = None,
    source: str = "whatsapp",
    confidence: Optional[float] = None,
    updated_by: Optional[str] = None,
) -> None:
    values = {
        "case_id": case_id,
        "key": key,
        "value_text": value_text,
        "value_json": value_json,
        "source": source,
        "confidence": confidence,
        "last_updated_by": updated_by,
        "updated_at": _now(),
    }
    stmt = insert(CaseField).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["case_id", "key"],
        set_={k: stmt.excluded[k] for k in values if k not in ("case_id", "key")},
    )
    db.execute(stmt)


def get_case_field(db: Session, case_id, key: str) -> Optional[CaseField]:
    return db.query(CaseField).filter(CaseField.case_id == case_id, CaseField.key == key).first()


def _send_action_message(db: Session, case: Case, params: dict) -> str:
    from app.services.outbound_service import send_message

    instance_id = (case.meta_json or {}).get("instance_id")
    instance = db.query(WaInstance).filter(WaInstance.id == instance_id).first() if instance_id else None
    to = params.get("to") or case.counterpart_phone
    if instance is None or not to:
        return "skipped"
    result = send_message(db, instance=instance, to=to, text=str(params["text"]), case_id=case.id)
    return result.value.delivery_status if result.ok else result.error_code


def _run_transition_action(db: Session, case: Case, action: dict, old_state, new_state) -> None:
    action_type = str(action.get("type") or "unknown")
    params = action.get("params") or {}
    meta = {"action": action, "from": old_state, "to": new_state}
    try:
        if action_type == "webhook" and params.get("url"):
            with httpx.Client(timeout=ACTION_TIMEOUT_SECONDS) as client:
                response = client.post(
                    params["url"],
                    json={
                        "tenantId": str(case.tenant_id),
                        "caseId": str(case.id),
                        "action": action_type,
                        "params": params,
                        "from": old_state,
                        "to": new_state,
                    },
                )
                response.raise_for_status()
            meta["http_status"] = response.status_code
        elif action_type == "send_whatsapp" and params.get("text"):
            meta["delivery_status"] = _send_action_message(db, case, params)
        add_timeline_event(
            db,
            tenant_id=case.tenant_id,
            case_id=case.id,
            event_type="automation_executed",
            message=f"Automação: {action_type}",
            meta=meta,
        )
    except httpx.HTTPError as exc:
        logger.warning(
            "Transition action failed",
            extra={"context": {"case_id": str(case.id), "action": action_type, "error": str(exc)}},
        )
        add_timeline_event(
            db,
            tenant_id=case.tenant_id,
            case_id=case.id,
            event_type="automation_failed",
            message=f"Automação falhou: {action_type}",
            meta={**meta, "error": str(exc)},
        )


def fire_transition_actions(db: Session, case: Case, journey: Journey, old_state: Optional[str], new_state: str) -> int:
    """Run actions configured for ``old->new`` and the ``->new`` wildcard."""
    transitions = (journey.default_state_machine_json or {}).get("transitions") or {}
    exact = f"{old_state or ''}->{new_state}"
    wildcard = f"->{new_state}"
    actions = list(transitions.get(exact) or [])
    if exact != wildcard:
        actions.extend(transitions.get(wildcard) or [])
    for action in actions:
        if isinstance(action, dict):
            _run_transition_action(db, case, action, old_state, new_state)
    return len(actions)


def set_case_state(
    db: Session,
    case: Case,
    journey: Journey,
    new_state: str,
    *,
    actor_type: str = "system",
    actor_id: Optional[Any] = None,
    reason: Optional[str] = None,
) -> Result[Case]:
    if not is_valid_state(journey, new_state):
        return Result.failure(
            f"State {new_state} is not part of journey {journey.key}",
            "invalid_state",
            allowed_states=journey_states(journey),
        )
    old_state = case.state
    if old_state == new_state:
        return Result.success(case)
    case.state = new_state
    case.updated_at = _now()
    add_timeline_event(
        db,
        tenant_id=case.tenant_id,
        case_id=case.id,
        event_type="state_changed",
        message=f"{old_state} -> {new_state}",
        actor_type=actor_type,
        actor_id=actor_id,
        meta={"from": old_state, "to": new_state, "reason": reason},
    )
    fire_transition_actions(db, case, journey, old_state, new_state)
    return Result.success(case)


def admin_transition_case(db: Session, *, tenant_id, case_id, new_state: str, actor_id, reason: Optional[str]) -> Result[Case]:
    """Manual override of a journey case state by a tenant administrator."""
    case = (
        db.query(Case)
        .filter(Case.id == case_id, Case.tenant_id == tenant_id, Case.deleted_at.is_(None))
        .first()
    )
    if case is None:
        return Result.failure("Case not found", "case_not_found")
    journey = get_journey(db, case.journey_id)
    if journey is None:
        return Result.failure("Journey not found for case", "no_journey_configured")
    return set_case_state(db, case, journey, new_state, actor_type="admin", actor_id=actor_id, reason=reason)


def _enqueue_followups(
    db: Session, case: Case, correlation_id: str, *, with_ocr: bool, media_url: Optional[str] = None
) -> list[str]:
    events: list[str] = []
    # OCR and validation are keyed per case; asking again is keyed per inbound event.
    jobs: list[tuple[str, dict, Optional[str]]] = []
    if with_ocr:
        jobs.append((job_service.OCR_IMAGE, {"case_id": str(case.id), "media_url": media_url}, None))
    jobs.append((job_service.VALIDATE_FIELDS, {"case_id": str(case.id)}, None))
    jobs.append((job_service.ASK_PENDENCIES, {"case_id": str(case.id)}, correlation_id))
    for job_type, payload, discriminator in jobs:
        if job_service.enqueue_job(
            db,
            tenant_id=case.tenant_id,
            job_type=job_type,
            idempotency_key=job_service.build_job_key(job_type, case.id, discriminator),
            payload_json={**payload, "correlation_id": correlation_id},
        ):
            events.append(f"job_enqueued:{job_type}")
    return events


def _apply_image(db, case, choice, message, sender, correlation_id) -> list[str]:
    events: list[str] = []
    if message.media_url:
        db.add(
            CaseAttachment(
                tenant_id=case.tenant_id,
                case_id=case.id,
                kind="image",
                storage_path=message.media_url,
                meta_json={"message_id": str(message.id), "correlation_id": correlation_id},
            )
        )
        events.append("attachment_added")

    if config_get(choice.config, "automation.default_pendencies", True):
        now = _now()
        _, created = upsert_pendency(
            db,
            case=case,
            pendency_type="need_location",
            question_text=NEED_LOCATION_QUESTION,
            required=True,
            assigned_to_role=sender.role,
            due_at=now + timedelta(hours=4),
        )
        if created:
            events.append("pendency_created:need_location")
        _, created = upsert_pendency(
            db,
            case=case,
            pendency_type="need_more_pages",
            question_text=NEED_MORE_PAGES_QUESTION,
            required=False,
            assigned_to_role=sender.role,
            due_at=now + timedelta(minutes=10),
        )
        if created:
            events.append("pendency_created:need_more_pages")

    if config_get(choice.config, "automation.ocr_enabled", True):
        events.extend(_enqueue_followups(db, case, correlation_id, with_ocr=True, media_url=message.media_url))

    target = config_get(choice.config, "automation.initial_state_by_type.image") or IMAGE_NEXT_STATE
    if is_valid_state(choice.journey, target) and case.state != target:
        set_case_state(db, case, choice.journey, target, actor_type=sender.role, actor_id=sender.phone, reason="image")
        events.append(f"state:{case.state}")
    return events


def _apply_location(db, case, choice, normalized, sender) -> tuple[list[str], Optional[UUID]]:
    events: list[str] = []
    answered_id = None
    location = normalized.location.as_json()
    upsert_case_field(
        db,
        case_id=case.id,
        key="location",
        value_json=location,
        value_text=f"{location['lat']},{location['lng']}",
        source="whatsapp",
        confidence=1.0,
        updated_by=sender.phone,
    )
    events.append("field_updated:location")

    for pendency in list_open_pendencies(db, case.id):
        if pendency.type == "need_location":
            answer_pendency(
                db,
                pendency,
                answered_text="Localização recebida",
                payload=location,
                actor_type=sender.role,
                actor_id=sender.phone,
            )
            answered_id = pendency.id
            events.append("pendency_answered:need_location")
            break

    next_state = config_get(choice.config, "automation.location_next_state")
    if not next_state and is_valid_state(choice.journey, LOCATION_NEXT_STATE):
        next_state = LOCATION_NEXT_STATE
    if next_state and next_state != case.state:
        result = set_case_state(
            db, case, choice.journey, next_state, actor_type=sender.role, actor_id=sender.phone, reason="location"
        )
        if result.ok:
            events.append(f"state:{case.state}")
        else:
            logger.warning(
                "Configured location state is not valid for journey",
                extra={"context": {"case_id": str(case.id), "state": next_state}},
            )
    return events, answered_id


def _apply_text(db, case, choice, message, normalized, sender, correlation_id) -> tuple[list[str], Optional[UUID]]:
    events: list[str] = []
    answered_id = None
    answer = AUDIO_PLACEHOLDER if normalized.type == "audio" else (normalized.text or "").strip()
    open_for_role = list_open_pendencies(db, case.id, role=sender.role)
    if open_for_role and answer:
        pendency = open_for_role[0]
        answer_pendency(
            db,
            pendency,
            answered_text=answer,
            payload={"message_id": str(message.id)},
            actor_type=sender.role,
            actor_id=sender.phone,
        )
        answered_id = pendency.id
        events.append(f"pendency_answered:{pendency.type}")

    if not choice.journey.is_crm and config_get(choice.config, "automation.followup_jobs", True):
        events.extend(_enqueue_followups(db, case, correlation_id, with_ocr=False))
    return events, answered_id


def apply_inbound_event(
    db: Session,
    *,
    case: Case,
    choice: JourneyChoice,
    message: WaMessage,
    normalized: NormalizedMessage,
    sender: SenderIdentity,
    correlation_id: str,
) -> InboundApplication:
    """Type-specific effects of one inbound message on its case."""
    outcome = InboundApplication()
    message.case_id = case.id
    case.updated_at = _now()

    if normalized.type == "image":
        outcome.events.extend(_apply_image(db, case, choice, message, sender, correlation_id))
    elif normalized.type == "location" and normalized.location is not None:
        events, outcome.answered_pendency_id = _apply_location(db, case, choice, normalized, sender)
        outcome.events.extend(events)
    elif normalized.type in ("text", "audio"):
        events, outcome.answered_pendency_id = _apply_text(
            db, case, choice, message, normalized, sender, correlation_id
        )
        outcome.events.extend(events)
    elif message.media_url:
        db.add(
            CaseAttachment(
                tenant_id=case.tenant_id,
                case_id=case.id,
                kind=normalized.type,
                storage_path=message.media_url,
                meta_json={"message_id": str(message.id)},
            )
        )
        outcome.events.append("attachment_added")
    return outcome


def link_outbound_message(db: Session, *, tenant_id, message: WaMessage, chat_id: Optional[str]) -> str:
    """Attach an outbound message to the most recent open case for the chat.

    Returns "linked" or "unlinked"; an unlinked outbound message is normal.
    """
    if message.case_id is not None:
        return "linked"
    keys = _chat_keys(chat_id)
    if not keys:
        return "unlinked"
    case = (
        db.query(Case)
        .filter(
            Case.tenant_id == tenant_id,
            Case.status == "open",
            Case.deleted_at.is_(None),
            Case.counterpart_phone.in_(keys),
        )
        .order_by(Case.updated_at.desc())
        .first()
    )
    if case is None:
        return "unlinked"
    message.case_id = case.id
    return "linked"
