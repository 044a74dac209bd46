"""Phone and chat-id helpers for WhatsApp payloads.

Phones are kept as ``+<country><digits>``. Group and broadcast ids are never
coerced into phone form; they stay opaque.
"""

import re
from typing import Any, Optional

BR_COUNTRY_CODE = "55"

_NON_DIGITS = re.compile(r"\D+")


def digits_only(value: Any) -> str:
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def looks_like_group_id(value: Any) -> bool:
    if value is None:
        return False
    raw = str(value).strip().lower()
    if not raw:
        return False
    if "@g.us" in raw or "status@broadcast" in raw or raw.endswith("-group"):
        return True
    digits = digits_only(raw)
    # legacy "<creator>-<epoch>" group ids
    if "-" in raw and len(digits) >= 18:
        return True
    if digits.startswith(BR_COUNTRY_CODE):
        stripped = digits[len(BR_COUNTRY_CODE):]
    else:
        stripped = digits
    # Z-API group ids: 1203 prefix, far longer than any phone.
    return stripped.startswith("1203") and len(stripped) >= 16


def normalize_phone_e164_like(value: Any) -> Optional[str]:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw or "@lid" in raw.lower():
        return None
    digits = digits_only(raw.split("@", 1)[0])
    if not digits:
        return None
    if digits.startswith(BR_COUNTRY_CODE) and len(digits) >= 12:
        return f"+{digits}"
    if len(digits) in (10, 11):
        return f"+{BR_COUNTRY_CODE}{digits}"
    if raw.startswith("+") and len(digits) >= 8:
        return f"+{digits}"
    return None


def normalize_group_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    if "@" in raw:
        return raw.lower()
    digits = digits_only(raw)
    return f"{digits}@g.us" if digits else None


def normalize_contact_id(value: Any) -> Optional[str]:
    """Phone in ``+digits`` form, or the opaque group id for group chats."""
    if looks_like_group_id(value):
        return normalize_group_id(value)
    return normalize_phone_e164_like(value)


def brazil_phone_variants(phone: Optional[str]) -> list[str]:
    """All stored forms a Brazilian number may take.

    Mobile numbers arrive with or without the extra leading ``9`` after the
    area code: ``+55 11 9xxxx-xxxx`` (13 digits) and ``+55 11 xxxx-xxxx``
    (12 digits) identify the same line.
    """
    normalized = normalize_phone_e164_like(phone)
    if not normalized:
        return []
    variants = [normalized]
    digits = normalized[1:]
    if not digits.startswith(BR_COUNTRY_CODE):
        return variants
    area = digits[2:4]
    local = digits[4:]
    if len(local) == 8 and local[0] in "6789":
        variants.append(f"+{BR_COUNTRY_CODE}{area}9{local}")
    elif len(local) == 9 and local[0] == "9":
        variants.append(f"+{BR_COUNTRY_CODE}{area}{local[1:]}")
    return variants


def canonical_brazil_phone(phone: Optional[str]) -> Optional[str]:
    """Stable key for a line: the 9-prefixed mobile form when one exists."""
    variants = brazil_phone_variants(phone)
    if not variants:
        return None
    return max(variants, key=len)


def same_phone_loose(a: Any, b: Any) -> bool:
    da = digits_only(a)
    db_ = digits_only(b)
    if len(da) < 10 or len(db_) < 10:
        return False
    if da[-11:] == db_[-11:]:
        return True
    return bool(set(brazil_phone_variants(a)) & set(brazil_phone_variants(b)))


def to_zapi_recipient(value: Any) -> Optional[str]:
    """Recipient id as Z-API expects it: bare digits, or ``<id>@g.us`` for groups."""
    if value is None:
        return None
    raw = str(value).strip()
    if looks_like_group_id(raw):
        base = raw.split("@", 1)[0]
        if base.endswith("-group"):
            base = base[: -len("-group")]
        return f"{base}@g.us"
    digits = digits_only(normalize_phone_e164_like(raw))
    return digits or None
