from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.models import Case, Pendency, UserProfile
from app.routers.responses import failure_response
from app.schemas.cases import CaseStateRequest, CaseStateResponse, ResolvePendencyRequest, ResolvePendencyResponse
from app.services import presence_service
from app.services.auth_service import get_current_profile, is_admin, require_admin
from app.services.case_service import admin_transition_case, resolve_pendency
from app.services.result import Result
from app.services.state_machine import PresenceState

logger = get_logger("cases_router")

router = APIRouter(tags=["cases"])


@router.post("/cases/{case_id}/state", response_model=CaseStateResponse)
def override_case_state(
    case_id: UUID,
    request: CaseStateRequest,
    profile: UserProfile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Manual state override. Presence days follow their own workflow table."""
    case = (
        db.query(Case)
        .filter(Case.id == case_id, Case.tenant_id == profile.tenant_id, Case.deleted_at.is_(None))
        .first()
    )
    if case is None:
        raise HTTPException(status_code=404, detail=f"Case {case_id} not found")

    if case.case_type == presence_service.PRESENCE_CASE_TYPE:
        try:
            target = PresenceState(request.state)
        except ValueError:
            return failure_response(Result.failure(f"Unknown presence state {request.state}", "invalid_state"))
        result = presence_service.override_state(
            db, case, target, actor_type="admin", actor_id=profile.user_id, reason=request.reason or "admin_override"
        )
    else:
        result = admin_transition_case(
            db,
            tenant_id=profile.tenant_id,
            case_id=case.id,
            new_state=request.state,
            actor_id=profile.user_id,
            reason=request.reason,
        )
    if not result.ok:
        db.rollback()
        return failure_response(result)
    db.commit()

    logger.info(
        "Case state overridden",
        extra={"context": {"case_id": str(case.id), "state": result.value.state, "actor_id": str(profile.user_id)}},
    )
    return CaseStateResponse(ok=True, case_id=str(case.id), state=result.value.state)


def _require_own_presence_case(db: Session, profile: UserProfile, pendency_id: UUID) -> None:
    pendency = (
        db.query(Pendency).filter(Pendency.id == pendency_id, Pendency.tenant_id == profile.tenant_id).first()
    )
    if pendency is None:
        return
    case = db.query(Case).filter(Case.id == pendency.case_id, Case.tenant_id == profile.tenant_id).first()
    if case is not None and case.case_type == presence_service.PRESENCE_CASE_TYPE and case.entity_id != profile.user_id:
        raise HTTPException(status_code=403, detail="Case belongs to another employee")


@router.post("/pendencies/{pendency_id}/resolve", response_model=ResolvePendencyResponse)
def resolve(
    pendency_id: UUID,
    request: ResolvePendencyRequest,
    profile: UserProfile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    if request.status == "waived" and not is_admin(profile):
        raise HTTPException(status_code=403, detail="Only administrators may waive a pendency")
    if not is_admin(profile):
        _require_own_presence_case(db, profile, pendency_id)

    result = resolve_pendency(
        db,
        tenant_id=profile.tenant_id,
        pendency_id=pendency_id,
        status=request.status,
        note=request.note,
        actor_id=profile.user_id,
    )
    if not result.ok:
        db.rollback()
        return failure_response(result)

    pendency = result.value
    case = db.query(Case).filter(Case.id == pendency.case_id).first()
    if case is not None:
        presence_service.reevaluate_after_resolution(db, case, actor_id=profile.user_id)
    db.commit()
    return ResolvePendencyResponse(
        ok=True,
        pendency_id=str(pendency.id),
        status=pendency.status,
        case_state=case.state if case is not None else None,
    )
