"""Z-API webhook endpoints (inbound and outbound capture)."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from app.database import get_db
from app.logging_config import get_logger
from app.services.ingest_service import InboxTrail, process_webhook, remember_delivery, write_inbox
from app.services.instance_service import extract_webhook_secret

logger = get_logger("webhook")

router = APIRouter(prefix="/webhooks/zapi", tags=["webhooks"])

QUERY_INSTANCE_PARAMS = ("instanceId", "instance_id", "instance")
QUERY_DIRECTION_PARAMS = ("dir", "direction")


async def _read_payload(request: Request) -> tuple[Optional[Any], Optional[str]]:
    """``(payload, problem)``; problem is empty_body, invalid_json or client_disconnected."""
    try:
        raw = await request.body()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return None, "client_disconnected"
    if not raw or not raw.strip():
        return None, "empty_body"
    try:
        return await request.json(), None
    except ValueError as exc:
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return {"raw_body": raw[:2000].decode("utf-8", "ignore")}, "invalid_json"


def _record_only(db: Session, meta: dict, payload: Any, *, ok: bool, http_status: int, reason: str) -> JSONResponse:
    write_inbox(db, InboxTrail(meta=meta), payload or {}, ok=ok, http_status=http_status, reason=reason)
    db.commit()
    body = {"ok": ok, "reason": reason}
    if not ok:
        body["error"] = reason
    return JSONResponse(status_code=http_status, content=body)


async def _ingest(request: Request, db: Session, *, path_secret: Optional[str], forced_direction: Optional[str]):
    secret, secret_source = extract_webhook_secret(request, path_secret)
    meta = {"secret_source": secret_source, "path": request.url.path, "method": request.method}

    if request.method == "GET":
        return _record_only(db, meta, None, ok=True, http_status=200, reason="probe")

    payload, problem = await _read_payload(request)
    if problem == "empty_body":
        logger.info("Webhook probe with empty body")
        return _record_only(db, meta, None, ok=True, http_status=200, reason="probe")
    if problem == "client_disconnected":
        return _record_only(db, meta, None, ok=True, http_status=200, reason="client_disconnected")
    if problem == "invalid_json":
        return _record_only(db, meta, payload, ok=False, http_status=400, reason="invalid_json")

    if isinstance(payload, dict):
        query_instance_id = next(
            (request.query_params.get(name) for name in QUERY_INSTANCE_PARAMS if request.query_params.get(name)),
            None,
        )
        if query_instance_id and not payload.get("instanceId"):
            payload["instanceId"] = query_instance_id

    try:
        outcome = await process_webhook(
            db,
            payload,
            secret=secret,
            forced_direction=forced_direction,
            request_meta=meta,
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.error("Webhook processing failed", exc_info=True, extra={"context": meta})
        try:
            write_inbox(
                db,
                InboxTrail(meta=meta),
                payload,
                ok=False,
                http_status=500,
                reason="internal_error",
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.error("Could not record failed webhook", exc_info=True)
        return JSONResponse(status_code=500, content={"ok": False, "error": "internal_error"})

    await remember_delivery(outcome.dedup_key)
    return JSONResponse(status_code=outcome.http_status, content=outcome.body)


def _query_direction(request: Request) -> Optional[str]:
    for name in QUERY_DIRECTION_PARAMS:
        value = request.query_params.get(name)
        if value:
            return value
    return None


@router.api_route("/inbound", methods=["GET", "POST"])
async def zapi_inbound(request: Request, db: Session = Depends(get_db)):
    return await _ingest(request, db, path_secret=None, forced_direction=_query_direction(request))


@router.api_route("/inbound/{secret}", methods=["GET", "POST"])
async def zapi_inbound_with_secret(secret: str, request: Request, db: Session = Depends(get_db)):
    return await _ingest(request, db, path_secret=secret, forced_direction=_query_direction(request))


@router.api_route("/outbound", methods=["GET", "POST"])
async def zapi_outbound(request: Request, db: Session = Depends(get_db)):
    return await _ingest(request, db, path_secret=None, forced_direction="outbound")


@router.api_route("/outbound/{secret}", methods=["GET", "POST"])
async def zapi_outbound_with_secret(secret: str, request: Request, db: Session = Depends(get_db)):
    return await _ingest(request, db, path_secret=secret, forced_direction="outbound")
