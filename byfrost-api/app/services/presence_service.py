"""Presence clock: one case per employee per local day.

Punches, rule pendencies (outside_radius, late_arrival, missing_break),
justification, human-gated day close and post-close adjustments. Nothing
here commits; the router owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import (
    BankHourLedger,
    Case,
    Journey,
    Pendency,
    PresenceEmployeeConfig,
    PresenceLocation,
    PresencePolicy,
    TimePunch,
    TimePunchAdjustment,
)
from app.services.case_service import add_timeline_event, answer_pendency, list_open_pendencies, upsert_pendency
from app.services.journey_service import (
    config_get,
    get_journey_by_key,
    get_tenant_journey_config,
    journey_default_state,
)
from app.services.presence_logic import (
    DEFAULT_PLANNED_MINUTES,
    DEFAULT_SCHEDULED_START,
    DEFAULT_TIME_ZONE,
    has_complete_break,
    haversine_meters,
    is_late,
    lateness_minutes,
    local_date_for,
    worked_minutes_from_punches,
)
from app.services.result import Result
from app.services.state_machine import (
    PresenceState,
    PunchType,
    can_transition,
    next_punch_type,
    parse_state,
    state_after_punch,
    transition,
)

logger = get_logger("presence_service")

PRESENCE_CASE_TYPE = "PRESENCE_DAY"
APPROVAL_PENDENCY = "approval_required"
CLOSED_STATES = (PresenceState.FECHADO, PresenceState.AJUSTADO)
PENDENCY_ROLE = "admin"

APPROVAL_QUESTION = "Aprovação do gestor necessária para fechamento do dia."
MISSING_BREAK_QUESTION = "Intervalo obrigatório não registrado (INÍCIO e FIM). Envie justificativa."


@dataclass
class PresenceSettings:
    enabled: bool = False
    allow_whatsapp_clocking: bool = False
    time_zone: str = DEFAULT_TIME_ZONE
    scheduled_start_hhmm: str = DEFAULT_SCHEDULED_START
    planned_minutes: int = DEFAULT_PLANNED_MINUTES
    radius_meters: int = 100
    lateness_tolerance_minutes: int = 10
    break_required: bool = True
    allow_outside_radius: bool = True
    location: Optional[PresenceLocation] = None
    journey: Optional[Journey] = None


@dataclass
class PunchOutcome:
    case: Case
    punch: TimePunch
    punch_type: PunchType
    state: PresenceState
    day: date
    distance_m: Optional[float] = None
    within_radius: Optional[bool] = None
    violations: list[str] = field(default_factory=list)

    def as_json(self) -> dict[str, Any]:
        return {
            "ok": True,
            "case_id": str(self.case.id),
            "punch_id": str(self.punch.id),
            "type": self.punch_type.value,
            "state": self.state.value,
            "date": self.day.isoformat(),
            "distance_m": round(self.distance_m) if self.distance_m is not None else None,
            "within_radius": self.within_radius,
            "status": self.punch.status,
            "pendencies": self.violations,
        }


@dataclass
class CloseOutcome:
    case: Case
    ledger: BankHourLedger
    worked_minutes: int
    planned_minutes: int

    def as_json(self) -> dict[str, Any]:
        return {
            "ok": True,
            "case_id": str(self.case.id),
            "state": self.case.state,
            "worked_minutes": self.worked_minutes,
            "planned_minutes": self.planned_minutes,
            "minutes_delta": self.ledger.minutes_delta,
            "balance_after": self.ledger.balance_after,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def load_presence_settings(db: Session, tenant_id, employee_id=None) -> PresenceSettings:
    """Tenant flags from the presence journey config, then policy, then employee overrides."""
    result = PresenceSettings()
    journey = get_journey_by_key(db, settings.presence_journey_key)
    if journey is None:
        return result
    result.journey = journey
    config = get_tenant_journey_config(db, tenant_id, journey.id)

    result.enabled = bool(config_get(config, "flags.presence_enabled", False))
    result.allow_whatsapp_clocking = bool(config_get(config, "flags.presence_allow_whatsapp_clocking", False))
    result.time_zone = str(config_get(config, "presence.time_zone", DEFAULT_TIME_ZONE))
    result.scheduled_start_hhmm = str(
        config_get(config, "presence.schedule.start_time")
        or config_get(config, "presence.scheduled_start_hhmm", DEFAULT_SCHEDULED_START)
    )
    try:
        result.planned_minutes = int(
            config_get(config, "presence.schedule.planned_minutes")
            or config_get(config, "presence.planned_minutes", DEFAULT_PLANNED_MINUTES)
        )
    except (TypeError, ValueError):
        result.planned_minutes = DEFAULT_PLANNED_MINUTES

    policy = (
        db.query(PresencePolicy)
        .filter(PresencePolicy.tenant_id == tenant_id)
        .order_by(PresencePolicy.created_at.desc())
        .first()
    )
    if policy is not None:
        result.radius_meters = policy.radius_meters
        result.lateness_tolerance_minutes = policy.lateness_tolerance_minutes
        result.break_required = bool(policy.break_required)
        result.allow_outside_radius = bool(policy.allow_outside_radius)
        if policy.location_id:
            result.location = db.query(PresenceLocation).filter(PresenceLocation.id == policy.location_id).first()

    if employee_id is not None:
        override = (
            db.query(PresenceEmployeeConfig)
            .filter(PresenceEmployeeConfig.tenant_id == tenant_id, PresenceEmployeeConfig.employee_id == employee_id)
            .first()
        )
        if override is not None:
            if override.scheduled_start_hhmm:
                result.scheduled_start_hhmm = override.scheduled_start_hhmm
            if override.planned_minutes is not None:
                result.planned_minutes = override.planned_minutes
    return result


def _find_day_case(db: Session, tenant_id, employee_id, day: date) -> Optional[Case]:
    return (
        db.query(Case)
        .filter(
            Case.tenant_id == tenant_id,
            Case.case_type == PRESENCE_CASE_TYPE,
            Case.entity_type == "employee",
            Case.entity_id == employee_id,
            Case.case_date == day,
        )
        .first()
    )


def ensure_presence_day_case(db: Session, *, tenant_id, employee_id, day: date, journey: Journey, channel: str) -> Case:
    """The employee's case for ``day``; concurrent first punches converge on one row."""
    existing = _find_day_case(db, tenant_id, employee_id, day)
    if existing is not None:
        return existing

    initial = journey_default_state(journey)
    case = Case(
        tenant_id=tenant_id,
        journey_id=journey.id,
        case_type=PRESENCE_CASE_TYPE,
        status="open",
        state=initial if initial in PresenceState.__members__ else PresenceState.AGUARDANDO_ENTRADA.value,
        title=f"Ponto {day.isoformat()}",
        created_by_channel=channel,
        assigned_user_id=employee_id,
        entity_type="employee",
        entity_id=employee_id,
        case_date=day,
        meta_json={"presence": True},
    )
    try:
        with db.begin_nested():
            db.add(case)
            db.flush()
    except IntegrityError:
        winner = _find_day_case(db, tenant_id, employee_id, day)
        if winner is None:
            raise
        logger.info(
            "Concurrent presence case open resolved to existing case",
            extra={"context": {"tenant_id": str(tenant_id), "case_id": str(winner.id)}},
        )
        return winner

    add_timeline_event(
        db,
        tenant_id=tenant_id,
        case_id=case.id,
        event_type="case_opened",
        message=f"Dia de ponto aberto ({day.isoformat()})",
        actor_type="employee",
        actor_id=employee_id,
        meta={"case_type": PRESENCE_CASE_TYPE, "date": day.isoformat()},
    )
    return case


def list_day_punches(db: Session, case_id) -> list[TimePunch]:
    return db.query(TimePunch).filter(TimePunch.case_id == case_id).order_by(TimePunch.timestamp.asc()).all()


def open_rule_pendencies(db: Session, case_id) -> list[Pendency]:
    """Open required pendencies that block approval (everything but approval itself)."""
    return [
        pendency
        for pendency in list_open_pendencies(db, case_id)
        if pendency.required and pendency.type != APPROVAL_PENDENCY
    ]


def get_presence_case(db: Session, tenant_id, case_id, *, for_update: bool = False) -> Result[Case]:
    query = db.query(Case).filter(Case.id == case_id, Case.tenant_id == tenant_id)
    if for_update:
        query = query.with_for_update()
    case = query.first()
    if case is None:
        return Result.failure("Case not found", "case_not_found")
    if case.case_type != PRESENCE_CASE_TYPE:
        return Result.failure("Case is not a presence day", "not_presence_case")
    return Result.success(case)


def _move_case(db: Session, case: Case, target: PresenceState, *, actor_type: str, actor_id, reason: str) -> None:
    current = parse_state(case.state)
    if current == target:
        return
    transition(current, target)
    case.state = target.value
    case.updated_at = _now()
    add_timeline_event(
        db,
        tenant_id=case.tenant_id,
        case_id=case.id,
        event_type="state_changed",
        message=f"{current.value} -> {target.value}",
        actor_type=actor_type,
        actor_id=actor_id,
        meta={"from": current.value, "to": target.value, "reason": reason},
    )


def _request_approval(db: Session, case: Case, *, actor_type: str, actor_id, reason: str) -> None:
    upsert_pendency(
        db,
        case=case,
        pendency_type=APPROVAL_PENDENCY,
        question_text=APPROVAL_QUESTION,
        required=True,
        assigned_to_role=PENDENCY_ROLE,
    )
    _move_case(db, case, PresenceState.PENDENTE_APROVACAO, actor_type=actor_type, actor_id=actor_id, reason=reason)


def _rule_violations(
    presence: PresenceSettings,
    punch_type: PunchType,
    now: datetime,
    previous_types: list[str],
    distance: Optional[float],
    within: Optional[bool],
) -> list[tuple[str, str]]:
    violations: list[tuple[str, str]] = []
    if within is False:
        name = presence.location.name if presence.location is not None else "local"
        violations.append(
            ("outside_radius", f"Batida fora do raio ({round(distance)}m de {name}). Envie justificativa.")
        )
    if punch_type == PunchType.ENTRY:
        lateness = lateness_minutes(now, presence.scheduled_start_hhmm, presence.time_zone)
        if is_late(lateness, presence.lateness_tolerance_minutes):
            violations.append(
                (
                    "late_arrival",
                    f"Entrada após tolerância (+{presence.lateness_tolerance_minutes} min). Envie justificativa.",
                )
            )
    if punch_type == PunchType.EXIT and presence.break_required and not has_complete_break(previous_types):
        violations.append(("missing_break", MISSING_BREAK_QUESTION))
    return violations


def clock_punch(
    db: Session,
    *,
    tenant_id,
    employee_id,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    accuracy_meters: Optional[float] = None,
    forced_type: Optional[str] = None,
    source: str = "APP",
    actor_is_admin: bool = False,
    now: Optional[datetime] = None,
) -> Result[PunchOutcome]:
    """Record the next punch of the employee's day and move the day case.

    Punches follow ENTRY, BREAK_START, BREAK_END, EXIT. Only administrators
    may force an out-of-sequence type. Any open rule pendency parks the case
    in PENDENTE_JUSTIFICATIVA.
    """
    presence = load_presence_settings(db, tenant_id, employee_id)
    if not presence.enabled:
        return Result.failure("Presence is not enabled for this tenant", "presence_disabled")
    if source == "WHATSAPP" and not presence.allow_whatsapp_clocking:
        return Result.failure("WhatsApp clocking is disabled", "whatsapp_clocking_disabled")
    if presence.journey is None:
        return Result.failure("Presence journey is not configured", "no_journey_configured")

    now = now or _now()
    day = local_date_for(now, presence.time_zone)
    case = ensure_presence_day_case(
        db,
        tenant_id=tenant_id,
        employee_id=employee_id,
        day=day,
        journey=presence.journey,
        channel="whatsapp" if source == "WHATSAPP" else "app",
    )
    current = parse_state(case.state)
    if current in CLOSED_STATES:
        return Result.failure("Day is already closed", "day_closed", case_id=str(case.id), state=current.value)

    punches = list_day_punches(db, case.id)
    previous_types = [punch.type for punch in punches]
    expected = next_punch_type(previous_types[-1] if previous_types else None)
    if forced_type:
        try:
            punch_type = PunchType(forced_type)
        except ValueError:
            return Result.failure(f"Unknown punch type {forced_type}", "invalid_punch_type")
        if punch_type != expected and not actor_is_admin:
            return Result.failure(
                "Punch type is out of sequence",
                "invalid_sequence",
                expected=expected.value if expected else None,
                got=punch_type.value,
            )
    elif expected is None:
        return Result.failure("Exit already recorded for today", "already_exited", case_id=str(case.id))
    else:
        punch_type = expected

    distance = within = None
    if presence.location is not None and latitude is not None and longitude is not None:
        distance = haversine_meters(latitude, longitude, presence.location.latitude, presence.location.longitude)
        within = distance <= presence.radius_meters

    violations = _rule_violations(presence, punch_type, now, previous_types, distance, within)
    punch = TimePunch(
        tenant_id=tenant_id,
        employee_id=employee_id,
        case_id=case.id,
        timestamp=now,
        type=punch_type.value,
        latitude=latitude,
        longitude=longitude,
        accuracy_meters=accuracy_meters,
        distance_from_location_m=distance,
        within_radius=within,
        status="VALID_WITH_EXCEPTION" if violations else "VALID",
        source=source,
        meta_json={
            "forced": bool(forced_type),
            "allow_outside_radius": presence.allow_outside_radius,
            "time_zone": presence.time_zone,
        },
    )
    db.add(punch)
    db.flush()

    for pendency_type, question in violations:
        upsert_pendency(
            db,
            case=case,
            pendency_type=pendency_type,
            question_text=question,
            required=True,
            assigned_to_role=PENDENCY_ROLE,
        )
        add_timeline_event(
            db,
            tenant_id=tenant_id,
            case_id=case.id,
            event_type=pendency_type,
            message=question,
            actor_type="system",
            meta={"punch_id": str(punch.id)},
        )

    add_timeline_event(
        db,
        tenant_id=tenant_id,
        case_id=case.id,
        event_type="presence_punch",
        message=f"Batida {punch_type.value}",
        actor_type="employee",
        actor_id=employee_id,
        meta={
            "punch_id": str(punch.id),
            "type": punch_type.value,
            "source": source,
            "distance_m": distance,
            "within_radius": within,
        },
    )

    actor = {"actor_type": "employee", "actor_id": employee_id}
    if violations or open_rule_pendencies(db, case.id):
        _move_case(db, case, PresenceState.PENDENTE_JUSTIFICATIVA, reason="rule_violation", **actor)
    else:
        if current == PresenceState.PENDENTE_JUSTIFICATIVA:
            _request_approval(db, case, reason="justified", **actor)
        if punch_type == PunchType.EXIT:
            _request_approval(db, case, reason="exit", **actor)
        else:
            _move_case(db, case, state_after_punch(punch_type), reason="punch", **actor)

    logger.info(
        "Punch recorded",
        extra={
            "context": {
                "tenant_id": str(tenant_id),
                "case_id": str(case.id),
                "type": punch_type.value,
                "state": case.state,
                "violations": [kind for kind, _ in violations],
            }
        },
    )
    return Result.success(
        PunchOutcome(
            case=case,
            punch=punch,
            punch_type=punch_type,
            state=parse_state(case.state),
            day=day,
            distance_m=distance,
            within_radius=within,
            violations=[kind for kind, _ in violations],
        )
    )


def justify(
    db: Session,
    *,
    tenant_id,
    case_id,
    text: str,
    actor_id,
    pendency_id=None,
    pendency_type: Optional[str] = None,
) -> Result[Case]:
    """Answer rule pendencies; once none remain, ask for approval."""
    found = get_presence_case(db, tenant_id, case_id)
    if not found.ok:
        return found
    case = found.value
    if parse_state(case.state) in CLOSED_STATES:
        return Result.failure("Day is already closed", "day_closed")
    text = (text or "").strip()
    if not text:
        return Result.failure("Justification text is required", "justification_required")

    targets = open_rule_pendencies(db, case.id)
    if pendency_id is not None:
        targets = [pendency for pendency in targets if str(pendency.id) == str(pendency_id)]
    elif pendency_type:
        targets = [pendency for pendency in targets if pendency.type == pendency_type]
    if not targets:
        return Result.failure("No open pendency to justify", "no_open_pendency")

    for pendency in targets:
        answer_pendency(db, pendency, answered_text=text, actor_type="employee", actor_id=actor_id)

    if not open_rule_pendencies(db, case.id):
        _request_approval(db, case, actor_type="employee", actor_id=actor_id, reason="justified")
        add_timeline_event(
            db,
            tenant_id=tenant_id,
            case_id=case.id,
            event_type="presence_justification_sent",
            message="Justificativas enviadas pelo colaborador.",
            actor_type="employee",
            actor_id=actor_id,
        )
    return Result.success(case)


def reevaluate_after_resolution(db: Session, case: Case, *, actor_id) -> None:
    """After an administrative answer/waiver, a parked day with nothing left moves to approval."""
    if case.case_type != PRESENCE_CASE_TYPE:
        return
    if parse_state(case.state) != PresenceState.PENDENTE_JUSTIFICATIVA:
        return
    if open_rule_pendencies(db, case.id):
        return
    _request_approval(db, case, actor_type="admin", actor_id=actor_id, reason="pendency_resolved")


def _latest_balance(db: Session, tenant_id, employee_id) -> int:
    row = (
        db.query(BankHourLedger)
        .filter(BankHourLedger.tenant_id == tenant_id, BankHourLedger.employee_id == employee_id)
        .order_by(BankHourLedger.created_at.desc())
        .first()
    )
    return int(row.balance_after) if row is not None else 0


def _break_waived(db: Session, case_id) -> bool:
    return (
        db.query(Pendency)
        .filter(Pendency.case_id == case_id, Pendency.type == "missing_break", Pendency.status != "open")
        .first()
        is not None
    )


def close_day(db: Session, *, tenant_id, case_id, actor_id, note: Optional[str] = None) -> Result[CloseOutcome]:
    found = get_presence_case(db, tenant_id, case_id, for_update=True)
    if not found.ok:
        return found
    case = found.value
    if parse_state(case.state) in CLOSED_STATES:
        return Result.failure("Day is already closed", "already_closed", state=case.state)

    blocking = open_rule_pendencies(db, case.id)
    if blocking:
        return Result.failure(
            "Required pendencies must be justified before closing",
            "blocked_pending_justification",
            pendencies=[{"id": str(p.id), "type": p.type} for p in blocking],
        )

    punches = list_day_punches(db, case.id)
    types = [punch.type for punch in punches]
    if PunchType.ENTRY.value not in types:
        return Result.failure("Day has no ENTRY punch", "missing_entry")
    if PunchType.EXIT.value not in types:
        return Result.failure("Day has no EXIT punch", "missing_exit")

    presence = load_presence_settings(db, tenant_id, case.entity_id)
    if presence.break_required and not has_complete_break(types) and not _break_waived(db, case.id):
        return Result.failure("Required break was not recorded", "missing_break")

    worked = worked_minutes_from_punches((punch.type, punch.timestamp) for punch in punches) or 0
    delta = worked - presence.planned_minutes
    ledger = BankHourLedger(
        tenant_id=tenant_id,
        employee_id=case.entity_id,
        case_id=case.id,
        minutes_delta=delta,
        balance_after=_latest_balance(db, tenant_id, case.entity_id) + delta,
        source="AUTO",
        note=note,
    )
    try:
        with db.begin_nested():
            db.add(ledger)
            db.flush()
    except IntegrityError:
        # another close of the same day won the unique AUTO ledger row
        return Result.failure("Day is already closed", "already_closed", state=case.state)

    for pendency in list_open_pendencies(db, case.id):
        if pendency.type == APPROVAL_PENDENCY:
            answer_pendency(
                db, pendency, answered_text=note or "Aprovado no fechamento", actor_type="admin", actor_id=actor_id
            )

    actor = {"actor_type": "admin", "actor_id": actor_id}
    if parse_state(case.state) != PresenceState.PENDENTE_APROVACAO:
        _move_case(db, case, PresenceState.PENDENTE_APROVACAO, reason="close", **actor)
    _move_case(db, case, PresenceState.FECHADO, reason="close", **actor)
    case.status = "closed"
    db.flush()

    add_timeline_event(
        db,
        tenant_id=tenant_id,
        case_id=case.id,
        event_type="presence_day_closed",
        message=f"Dia fechado: {worked} min trabalhados ({delta:+d} min)",
        meta={"worked_minutes": worked, "planned_minutes": presence.planned_minutes, "minutes_delta": delta},
        **actor,
    )
    logger.info(
        "Presence day closed",
        extra={"context": {"tenant_id": str(tenant_id), "case_id": str(case.id), "minutes_delta": delta}},
    )
    return Result.success(
        CloseOutcome(case=case, ledger=ledger, worked_minutes=worked, planned_minutes=presence.planned_minutes)
    )


def adjust_punch(
    db: Session,
    *,
    tenant_id,
    punch_id,
    actor_id,
    reason: str,
    new_timestamp: Optional[datetime] = None,
    new_type: Optional[str] = None,
) -> Result[TimePunchAdjustment]:
    """Correct a punch after the fact, keeping the original values in an adjustment row."""
    reason = (reason or "").strip()
    if not reason:
        return Result.failure("Adjustment reason is required", "note_required")
    if new_timestamp is None and not new_type:
        return Result.failure("Nothing to adjust", "nothing_to_adjust")
    if new_type:
        try:
            new_type = PunchType(new_type).value
        except ValueError:
            return Result.failure(f"Unknown punch type {new_type}", "invalid_punch_type")

    punch = db.query(TimePunch).filter(TimePunch.id == punch_id, TimePunch.tenant_id == tenant_id).first()
    if punch is None:
        return Result.failure("Punch not found", "punch_not_found")
    found = get_presence_case(db, tenant_id, punch.case_id)
    if not found.ok:
        return found
    case = found.value

    worked_before = worked_minutes_from_punches((p.type, p.timestamp) for p in list_day_punches(db, case.id))
    adjustment = TimePunchAdjustment(
        tenant_id=tenant_id,
        punch_id=punch.id,
        case_id=case.id,
        adjusted_by=actor_id,
        previous_timestamp=punch.timestamp,
        new_timestamp=new_timestamp or punch.timestamp,
        previous_type=punch.type,
        new_type=new_type or punch.type,
        reason=reason,
    )
    db.add(adjustment)
    if new_timestamp is not None:
        punch.timestamp = new_timestamp
    if new_type:
        punch.type = new_type
    punch.source = "ADMIN"
    punch.meta_json = {**(punch.meta_json or {}), "adjusted": True}
    db.flush()

    add_timeline_event(
        db,
        tenant_id=tenant_id,
        case_id=case.id,
        event_type="time_punch_adjusted",
        message=reason,
        actor_type="admin",
        actor_id=actor_id,
        meta={
            "punch_id": str(punch.id),
            "previous_timestamp": _iso(adjustment.previous_timestamp),
            "new_timestamp": _iso(adjustment.new_timestamp),
            "previous_type": adjustment.previous_type,
            "new_type": adjustment.new_type,
        },
    )

    if parse_state(case.state) == PresenceState.FECHADO:
        _move_case(db, case, PresenceState.AJUSTADO, actor_type="admin", actor_id=actor_id, reason="adjustment")

    already_posted = db.query(BankHourLedger).filter(BankHourLedger.case_id == case.id).first() is not None
    worked_after = worked_minutes_from_punches((p.type, p.timestamp) for p in list_day_punches(db, case.id))
    if already_posted and worked_before is not None and worked_after is not None:
        correction = worked_after - worked_before
        if correction:
            db.add(
                BankHourLedger(
                    tenant_id=tenant_id,
                    employee_id=case.entity_id,
                    case_id=case.id,
                    minutes_delta=correction,
                    balance_after=_latest_balance(db, tenant_id, case.entity_id) + correction,
                    source="MANUAL",
                    note=reason,
                )
            )
    return Result.success(adjustment)


def override_state(db: Session, case: Case, target: PresenceState, **kwargs) -> Result[Case]:
    """Manual state override for a presence case.

    FECHADO and AJUSTADO only come from close_day and adjust_punch. Leaving
    PENDENTE_JUSTIFICATIVA needs the rule pendencies answered first.
    """
    current = parse_state(case.state)
    if target in CLOSED_STATES and current != target:
        return Result.failure(
            f"{target.value} is reached through close-day, not a state override", "invalid_state", state=case.state
        )
    if not can_transition(current, target) and current != target:
        return Result.failure(f"Invalid transition: {current.value} -> {target.value}", "invalid_state", state=case.state)

    if current == PresenceState.PENDENTE_JUSTIFICATIVA and target != current:
        blocking = open_rule_pendencies(db, case.id)
        if blocking:
            return Result.failure(
                "Required pendencies must be justified first",
                "blocked_pending_justification",
                pendencies=[{"id": str(p.id), "type": p.type} for p in blocking],
            )

    if target == PresenceState.PENDENTE_APROVACAO:
        _request_approval(db, case, **kwargs)
    else:
        _move_case(db, case, target, **kwargs)
    return Result.success(case)
