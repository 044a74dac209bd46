"""Bearer-token identification of tenant users."""

import hashlib
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.models import UserProfile

logger = get_logger("auth_service")

ADMIN_ROLES = ("admin", "manager", "supervisor", "leader")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def find_profile_by_token(db: Session, token: Optional[str]) -> Optional[UserProfile]:
    if not token:
        return None
    return (
        db.query(UserProfile)
        .filter(UserProfile.access_token_hash == hash_token(token), UserProfile.deleted_at.is_(None))
        .first()
    )


def is_admin(profile: UserProfile) -> bool:
    return (profile.role or "").lower() in ADMIN_ROLES


def get_current_profile(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> UserProfile:
    profile = find_profile_by_token(db, extract_bearer(authorization))
    if profile is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bearer token")
    return profile


def require_admin(profile: UserProfile = Depends(get_current_profile)) -> UserProfile:
    if not is_admin(profile):
        logger.warning(
            "Admin endpoint refused",
            extra={"context": {"tenant_id": str(profile.tenant_id), "role": profile.role}},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return profile
