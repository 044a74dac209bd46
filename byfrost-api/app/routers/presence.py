"""Presence clock endpoints: punch, justify, close the day, adjust a punch."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import bind_logger
from app.models import UserProfile
from app.routers.responses import failure_response
from app.schemas.presence import AdjustPunchRequest, ClockRequest, CloseDayRequest, JustifyRequest
from app.services import presence_service
from app.services.auth_service import get_current_profile, is_admin, require_admin

router = APIRouter(prefix="/presence", tags=["presence"])


@router.post("/clock")
def clock(
    request: ClockRequest,
    profile: UserProfile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    admin = is_admin(profile)
    employee_id = profile.user_id
    if request.employee_id is not None and request.employee_id != profile.user_id:
        if not admin:
            raise HTTPException(status_code=403, detail="Only administrators may clock for another employee")
        employee_id = request.employee_id

    log = bind_logger("presence_router", tenant_id=str(profile.tenant_id), employee_id=str(employee_id))
    result = presence_service.clock_punch(
        db,
        tenant_id=profile.tenant_id,
        employee_id=employee_id,
        latitude=request.latitude,
        longitude=request.longitude,
        accuracy_meters=request.accuracy_meters,
        forced_type=request.forced_type,
        source=request.source,
        actor_is_admin=admin,
    )
    if not result.ok:
        db.rollback()
        log.info("Punch refused", context={"error": result.error_code})
        return failure_response(result)
    db.commit()
    return result.value.as_json()


@router.post("/justify")
def justify(
    request: JustifyRequest,
    profile: UserProfile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    found = presence_service.get_presence_case(db, profile.tenant_id, request.case_id)
    if not found.ok:
        return failure_response(found)
    if not is_admin(profile) and found.value.entity_id != profile.user_id:
        raise HTTPException(status_code=403, detail="Case belongs to another employee")

    result = presence_service.justify(
        db,
        tenant_id=profile.tenant_id,
        case_id=request.case_id,
        text=request.text,
        actor_id=profile.user_id,
        pendency_id=request.pendency_id,
        pendency_type=request.pendency_type,
    )
    if not result.ok:
        db.rollback()
        return failure_response(result)
    db.commit()
    case = result.value
    return {"ok": True, "case_id": str(case.id), "state": case.state}


@router.post("/close-day")
def close_day(
    request: CloseDayRequest,
    profile: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    result = presence_service.close_day(
        db,
        tenant_id=profile.tenant_id,
        case_id=request.case_id,
        actor_id=profile.user_id,
        note=request.note,
    )
    if not result.ok:
        db.rollback()
        return failure_response(result)
    db.commit()
    return result.value.as_json()


@router.post("/punches/{punch_id}/adjust")
def adjust_punch(
    punch_id: UUID,
    request: AdjustPunchRequest,
    profile: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    result = presence_service.adjust_punch(
        db,
        tenant_id=profile.tenant_id,
        punch_id=punch_id,
        actor_id=profile.user_id,
        reason=request.reason,
        new_timestamp=request.timestamp,
        new_type=request.type,
    )
    if not result.ok:
        db.rollback()
        return failure_response(result)
    db.commit()
    adjustment = result.value
    return {
        "ok": True,
        "adjustment_id": str(adjustment.id),
        "punch_id": str(adjustment.punch_id),
        "case_id": str(adjustment.case_id),
        "new_type": adjustment.new_type,
        "new_timestamp": adjustment.new_timestamp.isoformat() if adjustment.new_timestamp else None,
    }
