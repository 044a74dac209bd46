from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import CustomerAccount, UserProfile, Vendor
from app.services.normalize_service import NormalizedMessage, get_path
from app.services.phone_service import brazil_phone_variants, canonical_brazil_phone, same_phone_loose

logger = get_logger("identity_service")

INBOUND = "inbound"
OUTBOUND = "outbound"

DIRECTION_KEYWORD_PATHS = ("direction", "data.direction", "event", "type", "hookType")
OUTBOUND_WORDS = {"out", "outbound", "outgoing", "sent", "send", "sending"}
INBOUND_WORDS = {"in", "inbound", "incoming", "received", "receive"}
_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")
_WORD_SPLIT = re.compile(r"[^a-z]+")

VENDOR_ROLE = "vendor"
EMPLOYEE_ROLES = ("employee", "vendor", "leader", "supervisor", "manager", "admin")


@dataclass
class DirectionDecision:
    direction: str
    source: str  # from_me_flag, keyword, forced, phone_match, default
    forced_overridden: bool = False


@dataclass
class Endpoints:
    from_phone: Optional[str]
    to_phone: Optional[str]
    chat_id: Optional[str]
    sender_phone: Optional[str]


@dataclass
class SenderIdentity:
    phone: Optional[str]
    kind: str = "unknown"  # vendor, customer, unknown
    user_profile: Optional[UserProfile] = None
    vendor: Optional[Vendor] = None
    customer: Optional[CustomerAccount] = None

    @property
    def is_vendor(self) -> bool:
        return self.kind == VENDOR_ROLE

    @property
    def role(self) -> str:
        return VENDOR_ROLE if self.is_vendor else "customer"


def normalize_forced_direction(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    lowered = value.strip().lower()
    if lowered in OUTBOUND_WORDS:
        return OUTBOUND
    if lowered in INBOUND_WORDS:
        return INBOUND
    return None


def _keyword_tokens(value: str) -> set[str]:
    spaced = _CAMEL_BOUNDARY.sub(r"\1 \2", value).lower()
    return {token for token in _WORD_SPLIT.split(spaced) if token}


def direction_from_keywords(payload: dict) -> Optional[str]:
    for path in DIRECTION_KEYWORD_PATHS:
        value = get_path(payload, path)
        if not isinstance(value, str) or not value.strip():
            continue
        tokens = _keyword_tokens(value)
        is_out = bool(tokens & OUTBOUND_WORDS)
        is_in = bool(tokens & INBOUND_WORDS)
        if is_out and not is_in:
            return OUTBOUND
        if is_in and not is_out:
            return INBOUND
    return None


def resolve_direction(
    payload: dict,
    normalized: NormalizedMessage,
    instance_phone: Optional[str],
    forced: Optional[str] = None,
) -> DirectionDecision:
    """Decide inbound/outbound for one webhook call.

    Order: provider self-sent flag, direction keywords, forced direction from
    the endpoint, then comparing the sender with the instance's own number.
    The first two are strong evidence and win over a forced direction.
    """
    forced = normalize_forced_direction(forced)

    strong: Optional[DirectionDecision] = None
    if normalized.from_me is not None:
        strong = DirectionDecision(OUTBOUND if normalized.from_me else INBOUND, "from_me_flag")
    else:
        keyword = direction_from_keywords(payload)
        if keyword:
            strong = DirectionDecision(keyword, "keyword")

    if strong is not None:
        if forced and forced != strong.direction:
            strong.forced_overridden = True
            logger.info(
                "Forced direction overridden by payload evidence",
                extra={"context": {"forced": forced, "resolved": strong.direction, "source": strong.source}},
            )
        return strong

    if forced:
        return DirectionDecision(forced, "forced")

    if instance_phone and not normalized.is_group:
        if normalized.from_id and same_phone_loose(normalized.from_id, instance_phone):
            return DirectionDecision(OUTBOUND, "phone_match")
        if normalized.to_id and same_phone_loose(normalized.to_id, instance_phone):
            return DirectionDecision(INBOUND, "phone_match")

    return DirectionDecision(INBOUND, "default")


def resolve_endpoints(normalized: NormalizedMessage, direction: str, instance_phone: Optional[str]) -> Endpoints:
    if direction == INBOUND:
        sender = normalized.participant_phone if normalized.is_group else normalized.from_id
        return Endpoints(
            from_phone=sender,
            to_phone=normalized.to_id or instance_phone,
            chat_id=normalized.from_id,
            sender_phone=sender,
        )

    # Self-sent Z-API events report the chat in "phone" and the instance in "connectedPhone".
    to_is_self = normalized.to_id is None or (
        instance_phone is not None and same_phone_loose(normalized.to_id, instance_phone)
    )
    from_is_self = instance_phone is not None and same_phone_loose(normalized.from_id, instance_phone)
    if to_is_self and not from_is_self:
        chat_id = normalized.from_id
    else:
        chat_id = normalized.to_id
    return Endpoints(
        from_phone=instance_phone,
        to_phone=chat_id,
        chat_id=chat_id,
        sender_phone=instance_phone,
    )


def find_user_profile_by_phone(
    db: Session, tenant_id: UUID, phone: Optional[str], roles: tuple[str, ...]
) -> Optional[UserProfile]:
    variants = brazil_phone_variants(phone)
    if not variants:
        return None
    return (
        db.query(UserProfile)
        .filter(
            UserProfile.tenant_id == tenant_id,
            UserProfile.phone_e164.in_(variants),
            UserProfile.role.in_(roles),
            UserProfile.deleted_at.is_(None),
        )
        .order_by(UserProfile.created_at.desc())
        .first()
    )


def find_vendor_user(db: Session, tenant_id: UUID, phone: Optional[str]) -> Optional[UserProfile]:
    return find_user_profile_by_phone(db, tenant_id, phone, (VENDOR_ROLE,))


def find_employee_by_phone(db: Session, tenant_id: UUID, phone: Optional[str]) -> Optional[UserProfile]:
    return find_user_profile_by_phone(db, tenant_id, phone, EMPLOYEE_ROLES)


def find_vendor(db: Session, tenant_id: UUID, phone: Optional[str]) -> Optional[Vendor]:
    variants = brazil_phone_variants(phone)
    if not variants:
        return None
    return (
        db.query(Vendor)
        .filter(Vendor.tenant_id == tenant_id, Vendor.phone_e164.in_(variants), Vendor.active.is_(True))
        .order_by(Vendor.created_at.asc())
        .first()
    )


def find_customer(db: Session, tenant_id: UUID, phone: Optional[str]) -> Optional[CustomerAccount]:
    variants = brazil_phone_variants(phone)
    if not variants:
        return None
    return (
        db.query(CustomerAccount)
        .filter(CustomerAccount.tenant_id == tenant_id, CustomerAccount.phone_e164.in_(variants))
        .order_by(CustomerAccount.created_at.asc())
        .first()
    )


def _insert_identity_row(db: Session, model, values: dict[str, Any]) -> None:
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=["tenant_id", "phone_e164"])
    db.execute(stmt)


def ensure_vendor(db: Session, tenant_id: UUID, phone: str, display_name: Optional[str] = None) -> Optional[Vendor]:
    vendor = find_vendor(db, tenant_id, phone)
    if vendor:
        return vendor
    _insert_identity_row(
        db,
        Vendor,
        {"tenant_id": tenant_id, "phone_e164": canonical_brazil_phone(phone) or phone, "display_name": display_name},
    )
    logger.info("Vendor auto-created", extra={"context": {"tenant_id": str(tenant_id), "phone": phone}})
    return find_vendor(db, tenant_id, phone)


def ensure_customer(db: Session, tenant_id: UUID, phone: str, name: Optional[str] = None) -> Optional[CustomerAccount]:
    customer = find_customer(db, tenant_id, phone)
    if customer:
        return customer
    _insert_identity_row(
        db,
        CustomerAccount,
        {"tenant_id": tenant_id, "phone_e164": canonical_brazil_phone(phone) or phone, "name": name},
    )
    return find_customer(db, tenant_id, phone)


def resolve_sender_identity(db: Session, tenant_id: UUID, phone: Optional[str]) -> SenderIdentity:
    """Who sent this message, independent of the payload shape.

    A sender is a vendor when the phone (any Brazilian variant) belongs to a
    vendor-role user profile or an active vendor record.
    """
    if not phone:
        return SenderIdentity(phone=None)
    profile = find_vendor_user(db, tenant_id, phone)
    vendor = find_vendor(db, tenant_id, phone)
    if profile or vendor:
        return SenderIdentity(phone=phone, kind=VENDOR_ROLE, user_profile=profile, vendor=vendor)
    return SenderIdentity(phone=phone, kind="unknown", customer=find_customer(db, tenant_id, phone))
