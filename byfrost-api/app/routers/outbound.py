from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.routers.responses import failure_response
from app.schemas.outbound import SendMessageRequest, SendMessageResponse
from app.services.instance_service import get_instance
from app.services.outbound_service import send_message

logger = get_logger("outbound_router")

router = APIRouter(tags=["whatsapp"])


@router.post("/whatsapp/send", response_model=SendMessageResponse)
def whatsapp_send(request: SendMessageRequest, db: Session = Depends(get_db)):
    """Send through the tenant's instance. The message row is kept even if delivery fails."""
    instance = get_instance(db, request.tenant_id, request.instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Instance {request.instance_id} not found")

    result = send_message(
        db,
        instance=instance,
        to=request.to,
        message_type=request.type,
        text=request.text,
        media_url=request.media_url,
        location=request.location.model_dump() if request.location else None,
        case_id=request.case_id,
    )
    if not result.ok:
        return failure_response(result)
    db.commit()

    message = result.value
    return SendMessageResponse(
        ok=message.delivery_status != "failed",
        message_id=message.id,
        delivery_status=message.delivery_status,
        delivery_error=message.delivery_error,
    )
