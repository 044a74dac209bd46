"""WhatsApp clock-in: keyword stages a request, the next location pin completes it."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import PresencePendingCommand, UserProfile, WaInstance
from app.services import outbound_service, presence_service
from app.services.identity_service import find_employee_by_phone
from app.services.normalize_service import NormalizedMessage

logger = get_logger("presence_command_service")

COMMAND_KEYWORDS = {
    "ponto": None,
    "bater ponto": None,
    "entrada": "ENTRY",
    "intervalo": "BREAK_START",
    "pausa": "BREAK_START",
    "volta": "BREAK_END",
    "retorno": "BREAK_END",
    "saida": "EXIT",
}

ASK_LOCATION_REPLY = "Para registrar o ponto, envie sua localização atual (anexo > localização)."
PUNCH_LABELS = {
    "ENTRY": "Entrada",
    "BREAK_START": "Início do intervalo",
    "BREAK_END": "Fim do intervalo",
    "EXIT": "Saída",
}
ERROR_REPLIES = {
    "already_exited": "Sua saída de hoje já foi registrada.",
    "invalid_sequence": "Essa batida não é a próxima da sequência do dia. Envie apenas 'ponto'.",
    "day_closed": "O dia já foi fechado pelo gestor.",
}


@dataclass
class CommandOutcome:
    action: str  # staged, punched, rejected
    reply: Optional[str] = None
    error_code: Optional[str] = None
    punch: Optional[presence_service.PunchOutcome] = None


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s]", " ", stripped.lower())).strip()


def parse_command(text: Optional[str]) -> tuple[bool, Optional[str]]:
    """``(is_command, punch_type)``; the whole message must be a keyword."""
    if not text:
        return False, None
    folded = _fold(text)
    if folded in COMMAND_KEYWORDS:
        return True, COMMAND_KEYWORDS[folded]
    return False, None


def stage_command(
    db: Session, *, instance: WaInstance, employee: UserProfile, phone: str, punch_type: Optional[str], now: datetime
) -> None:
    values = {
        "tenant_id": instance.tenant_id,
        "instance_id": instance.id,
        "employee_id": employee.user_id,
        "phone_e164": phone,
        "punch_type": punch_type,
        "expires_at": now + timedelta(minutes=settings.presence_command_ttl_minutes),
        "created_at": now,
    }
    stmt = insert(PresencePendingCommand).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "employee_id"],
        set_={key: stmt.excluded[key] for key in ("instance_id", "phone_e164", "punch_type", "expires_at", "created_at")},
    )
    db.execute(stmt)


def take_pending_command(db: Session, *, tenant_id, employee_id, now: datetime) -> Optional[PresencePendingCommand]:
    """Pop the staged command; expired ones are removed and ignored."""
    pending = (
        db.query(PresencePendingCommand)
        .filter(PresencePendingCommand.tenant_id == tenant_id, PresencePendingCommand.employee_id == employee_id)
        .first()
    )
    if pending is None:
        return None
    db.delete(pending)
    if pending.expires_at <= now:
        logger.info(
            "Expired presence command discarded",
            extra={"context": {"tenant_id": str(tenant_id), "employee_id": str(employee_id)}},
        )
        return None
    return pending


def _reply(db: Session, instance: WaInstance, to: str, text: str, case_id=None) -> None:
    result = outbound_service.send_message(db, instance=instance, to=to, text=text, case_id=case_id, meta={"presence": True})
    if not result.ok:
        logger.warning(
            "Presence reply not sent",
            extra={"context": {"instance_id": str(instance.id), "error": result.error_code}},
        )


def _punch_reply(outcome: presence_service.PunchOutcome) -> str:
    label = PUNCH_LABELS.get(outcome.punch_type.value, outcome.punch_type.value)
    when = outcome.punch.timestamp.strftime("%H:%M") if outcome.punch.timestamp else ""
    reply = f"Ponto registrado: {label} ({when} UTC)."
    if outcome.violations:
        reply += " Há pendências: " + ", ".join(outcome.violations) + ". Envie sua justificativa pelo app."
    return reply


def handle_presence_message(
    db: Session,
    *,
    instance: WaInstance,
    normalized: NormalizedMessage,
    sender_phone: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[CommandOutcome]:
    """Consume the message when it is a presence command or the location that completes one.

    Returns None when the message is not for the presence clock, so the
    caller routes it to a journey.
    """
    if normalized.is_group or normalized.from_me or not sender_phone:
        return None
    is_command, punch_type = parse_command(normalized.text) if normalized.type == "text" else (False, None)
    is_location = normalized.type == "location" and normalized.location is not None
    if not is_command and not is_location:
        return None

    employee = find_employee_by_phone(db, instance.tenant_id, sender_phone)
    if employee is None:
        return None
    presence = presence_service.load_presence_settings(db, instance.tenant_id, employee.user_id)
    if not (presence.enabled and presence.allow_whatsapp_clocking):
        return None

    now = now or datetime.now(timezone.utc)
    if is_command:
        stage_command(db, instance=instance, employee=employee, phone=sender_phone, punch_type=punch_type, now=now)
        _reply(db, instance, sender_phone, ASK_LOCATION_REPLY)
        logger.info(
            "Presence command staged",
            extra={"context": {"tenant_id": str(instance.tenant_id), "punch_type": punch_type}},
        )
        return CommandOutcome(action="staged", reply=ASK_LOCATION_REPLY)

    pending = take_pending_command(db, tenant_id=instance.tenant_id, employee_id=employee.user_id, now=now)
    if pending is None:
        return None
    result = presence_service.clock_punch(
        db,
        tenant_id=instance.tenant_id,
        employee_id=employee.user_id,
        latitude=normalized.location.latitude,
        longitude=normalized.location.longitude,
        forced_type=pending.punch_type,
        source="WHATSAPP",
        now=now,
    )
    if not result.ok:
        reply = ERROR_REPLIES.get(result.error_code, "Não foi possível registrar o ponto.")
        _reply(db, instance, sender_phone, reply)
        return CommandOutcome(action="rejected", reply=reply, error_code=result.error_code)

    reply = _punch_reply(result.value)
    _reply(db, instance, sender_phone, reply, case_id=result.value.case.id)
    return CommandOutcome(action="punched", reply=reply, punch=result.value)
