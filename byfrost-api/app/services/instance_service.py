import hmac
from typing import Optional
from uuid import UUID

from fastapi import Request
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import WaInstance

logger = get_logger("instance_service")

SECRET_HEADERS = ("X-Webhook-Secret", "X-Byfrost-Webhook-Secret", "X-Byfrost-Secret")
SECRET_QUERY_PARAMS = ("secret", "webhook_secret")


def extract_webhook_secret(request: Request, path_secret: Optional[str] = None) -> tuple[Optional[str], Optional[str]]:
    """Shared secret and where it came from: header, then query, then path."""
    for header in SECRET_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip(), "header"
    for param in SECRET_QUERY_PARAMS:
        value = request.query_params.get(param)
        if value and value.strip():
            return value.strip(), "query"
    if path_secret and path_secret.strip():
        return path_secret.strip(), "path"
    return None, None


def resolve_instance(db: Session, zapi_instance_id: Optional[str]) -> Optional[WaInstance]:
    """Active instance for a provider id; duplicates resolve to the latest updated row."""
    if not zapi_instance_id:
        return None
    instances = (
        db.query(WaInstance)
        .filter(
            WaInstance.zapi_instance_id == zapi_instance_id,
            WaInstance.status == "active",
            WaInstance.deleted_at.is_(None),
        )
        .order_by(WaInstance.updated_at.desc().nullslast(), WaInstance.created_at.desc().nullslast())
        .all()
    )
    if len(instances) > 1:
        logger.warning(
            "Duplicate active instances for provider id",
            extra={
                "context": {
                    "zapi_instance_id": zapi_instance_id,
                    "count": len(instances),
                    "chosen": str(instances[0].id),
                }
            },
        )
    return instances[0] if instances else None


def get_instance(db: Session, tenant_id: UUID, instance_id: UUID) -> Optional[WaInstance]:
    return (
        db.query(WaInstance)
        .filter(WaInstance.id == instance_id, WaInstance.tenant_id == tenant_id, WaInstance.deleted_at.is_(None))
        .first()
    )


def verify_secret(instance: WaInstance, provided: Optional[str]) -> bool:
    expected = instance.webhook_secret
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
