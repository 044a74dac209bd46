"""Journey catalog lookups and routing of a sender to exactly one journey."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Journey, TenantJourney, WaInstance
from app.services.identity_service import SenderIdentity
from app.services.result import Result

logger = get_logger("journey_service")

DEFAULT_STATE = "new"


@dataclass
class JourneyChoice:
    journey: Journey
    reason: str  # instance_default, first_enabled, fallback, vendor_override, crm_reroute
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def is_vendor_journey(self) -> bool:
        return self.journey.key == settings.vendor_journey_key


def config_get(config: Optional[dict], path: str, default: Any = None) -> Any:
    current: Any = config or {}
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return default if current is None else current


def journey_states(journey: Journey) -> list[str]:
    machine = journey.default_state_machine_json or {}
    states = machine.get("states") or []
    return [str(state) for state in states if state]


def journey_default_state(journey: Journey) -> str:
    states = journey_states(journey)
    default = (journey.default_state_machine_json or {}).get("default")
    if default and default in states:
        return default
    return states[0] if states else DEFAULT_STATE


def is_valid_state(journey: Journey, state: Optional[str]) -> bool:
    return bool(state) and state in journey_states(journey)


def resolve_initial_state(journey: Journey, config: Optional[dict], message_type: str) -> str:
    """Per-type hint from tenant config, then the journey default, then its first state."""
    hint = config_get(config, f"automation.initial_state_by_type.{message_type}") or config_get(
        config, f"initial_state_by_type.{message_type}"
    )
    if hint and is_valid_state(journey, hint):
        return hint
    return journey_default_state(journey)


def get_journey(db: Session, journey_id: Optional[UUID]) -> Optional[Journey]:
    if not journey_id:
        return None
    return db.query(Journey).filter(Journey.id == journey_id).first()


def get_journey_by_key(db: Session, key: str) -> Optional[Journey]:
    return db.query(Journey).filter(Journey.key == key).first()


def list_enabled_journeys(db: Session, tenant_id: UUID) -> list[tuple[Journey, TenantJourney]]:
    rows = (
        db.query(Journey, TenantJourney)
        .join(TenantJourney, TenantJourney.journey_id == Journey.id)
        .filter(TenantJourney.tenant_id == tenant_id, TenantJourney.enabled.is_(True))
        .order_by(TenantJourney.created_at.asc(), TenantJourney.id.asc())
        .all()
    )
    return [(journey, tenant_journey) for journey, tenant_journey in rows]


def get_tenant_journey_config(db: Session, tenant_id: UUID, journey_id: UUID) -> dict:
    row = (
        db.query(TenantJourney)
        .filter(TenantJourney.tenant_id == tenant_id, TenantJourney.journey_id == journey_id)
        .first()
    )
    return dict(row.config_json or {}) if row else {}


def choose_journey(
    *,
    instance_default: Optional[Journey],
    enabled: list[Journey],
    fallback: Optional[Journey],
    vendor_journey: Optional[Journey],
    sender_is_vendor: bool,
) -> tuple[Optional[Journey], str]:
    """Pure routing rule.

    Base choice: instance default, first enabled journey, fallback key.
    A vendor sender is always routed to the vendor journey. A non-vendor
    landing on the vendor journey goes to the first enabled CRM journey when
    the tenant has one.
    """
    if instance_default is not None:
        journey, reason = instance_default, "instance_default"
    elif enabled:
        journey, reason = enabled[0], "first_enabled"
    else:
        journey, reason = fallback, "fallback"

    if sender_is_vendor and vendor_journey is not None:
        if journey is None or journey.id != vendor_journey.id:
            return vendor_journey, "vendor_override"
        return journey, reason

    if journey is not None and vendor_journey is not None and journey.id == vendor_journey.id:
        crm = next((candidate for candidate in enabled if candidate.is_crm), None)
        if crm is not None:
            return crm, "crm_reroute"

    return journey, reason


def select_journey(
    db: Session, tenant_id: UUID, instance: WaInstance, sender: SenderIdentity
) -> Result[JourneyChoice]:
    enabled_rows = list_enabled_journeys(db, tenant_id)
    enabled = [journey for journey, _ in enabled_rows if journey.key != settings.presence_journey_key]
    configs = {journey.id: dict(row.config_json or {}) for journey, row in enabled_rows}

    instance_default = get_journey(db, instance.default_journey_id)
    fallback = None
    if instance_default is None and not enabled:
        fallback = get_journey_by_key(db, settings.fallback_journey_key)
    vendor_journey = get_journey_by_key(db, settings.vendor_journey_key)

    journey, reason = choose_journey(
        instance_default=instance_default,
        enabled=enabled,
        fallback=fallback,
        vendor_journey=vendor_journey,
        sender_is_vendor=sender.is_vendor,
    )
    if journey is None:
        logger.warning(
            "No journey configured for tenant",
            extra={"context": {"tenant_id": str(tenant_id), "instance_id": str(instance.id)}},
        )
        return Result.failure("No journey configured for tenant", "no_journey_configured")

    config = configs.get(journey.id)
    if config is None:
        config = get_tenant_journey_config(db, tenant_id, journey.id)
    logger.info(
        "Journey selected",
        extra={
            "context": {
                "tenant_id": str(tenant_id),
                "journey_key": journey.key,
                "reason": reason,
                "sender_kind": sender.kind,
            }
        },
    )
    return Result.success(JourneyChoice(journey=journey, reason=reason, config=config))
