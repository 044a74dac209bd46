"""Handlers for queued case follow-ups and the batch runner used by the worker."""

from __future__ import annotations

import base64
import os
import re
from typing import Any, Callable, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Case, Vendor, WaInstance
from app.services import job_service
from app.services.case_service import (
    add_timeline_event,
    get_case_field,
    list_open_pendencies,
    set_case_state,
    upsert_case_field,
    upsert_pendency,
)
from app.services.journey_service import config_get, get_journey, get_tenant_journey_config, is_valid_state
from app.services.outbound_service import send_message

logger = get_logger("job_processor")

VISION_ENDPOINT = "https://vision.googleapis.com/v1/images:annotate"
OCR_CONFIDENCE = 0.85
NEED_LOCATION_QUESTION = "Envie sua localização (WhatsApp: Compartilhar localização)."
PENDING_VENDOR_STATE = "pending_vendor"
READY_STATE = "ready_for_review"
SIGNATURE_QUESTION = (
    "O pedido está sem assinatura do cliente. Confirme se há assinatura e, se possível, "
    "envie uma foto mais nítida da assinatura."
)
TOTAL_FOLLOWUP_QUESTION = "TOTAL não detectado. Validar manualmente o valor total do pedido."

CPF_RE = re.compile(r"\b(\d{3}\.?\d{3}\.?\d{3}-?\d{2})\b")
RG_LABELED_RE = re.compile(r"\bRG\s*[:\-]?\s*(\d{6,12})\b", re.IGNORECASE)
RG_BARE_RE = re.compile(r"\b(\d{7,10})\b")
BIRTH_DATE_RE = re.compile(r"\b(\d{2}[/-]\d{2}[/-]\d{2,4})\b")
PHONE_LABELED_RE = re.compile(r"\bTelefone\s*[:\-]?\s*(\(?\d{2}\)?\s*9?\d{4}[-\s]?\d{4})\b", re.IGNORECASE)
PHONE_BARE_RE = re.compile(r"\b(\(?\d{2}\)?\s*9?\d{4}[-\s]?\d{4})\b")
TOTAL_RE = re.compile(r"R\$\s*[0-9.,]{2,}")
NAME_RE = re.compile(r"\bNome\s*[:\-]\s*(.+)", re.IGNORECASE)
SIGNATURE_RE = re.compile(r"assinatura", re.IGNORECASE)


def job_worker_settings() -> tuple[float, int, int, float, int]:
    """(interval, limit, max_attempts, retry_backoff, stale_seconds) from JOB_* env vars."""
    interval_seconds = max(float(os.environ.get("JOB_WORKER_INTERVAL_SECONDS", "2")), 0.1)
    limit = int(os.environ.get("JOB_PROCESS_LIMIT", "10"))
    max_attempts = int(os.environ.get("JOB_MAX_ATTEMPTS", "5"))
    retry_backoff_seconds = float(os.environ.get("JOB_RETRY_BACKOFF_SECONDS", "30"))
    stale_seconds = int(float(os.environ.get("JOB_STALE_SECONDS", "300")))
    return interval_seconds, limit, max_attempts, retry_backoff_seconds, stale_seconds


class JobError(Exception):
    """A job that cannot complete now; the runner retries it with backoff."""


def _load_case(db: Session, job: dict) -> Case:
    case_id = (job.get("payload_json") or {}).get("case_id")
    if not case_id:
        raise JobError("missing payload.case_id")
    case = db.query(Case).filter(Case.id == case_id, Case.tenant_id == job["tenant_id"]).first()
    if case is None:
        raise JobError(f"case {case_id} not found")
    return case


def run_ocr(image_url: str) -> str:
    """Text of a document photo via Google Vision DOCUMENT_TEXT_DETECTION."""
    with httpx.Client(timeout=settings.ocr_timeout_seconds) as client:
        image = client.get(image_url)
        image.raise_for_status()
        response = client.post(
            VISION_ENDPOINT,
            params={"key": settings.google_vision_api_key},
            json={
                "requests": [
                    {
                        "image": {"content": base64.b64encode(image.content).decode("ascii")},
                        "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
                    }
                ]
            },
        )
        response.raise_for_status()
    data = response.json()
    first = (data.get("responses") or [{}])[0]
    if first.get("error"):
        raise JobError(f"vision error: {first['error'].get('message')}")
    return (first.get("fullTextAnnotation") or {}).get("text") or ""


def handle_ocr_image(db: Session, job: dict) -> str:
    case = _load_case(db, job)
    media_url = (job.get("payload_json") or {}).get("media_url")
    if not settings.google_vision_api_key:
        logger.info("OCR skipped, no Vision key configured", extra={"context": {"case_id": str(case.id)}})
        return "skipped"
    if not media_url:
        return "skipped"

    text = run_ocr(media_url)
    upsert_case_field(
        db,
        case_id=case.id,
        key="ocr_text",
        value_text=text,
        source="ocr",
        confidence=OCR_CONFIDENCE,
        updated_by="ocr",
    )
    add_timeline_event(
        db,
        tenant_id=case.tenant_id,
        case_id=case.id,
        event_type="ocr_done",
        message="OCR concluído.",
        actor_type="ai",
        meta={"chars": len(text)},
    )
    _enqueue_next(db, case, job_service.EXTRACT_FIELDS, job)
    return "done"


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)


def extract_fields_from_text(text: str) -> dict[str, tuple[str, float]]:
    """Pattern-based order fields from OCR text as ``{key: (value, confidence)}``.

    Only matched keys are returned, except ``signature_present`` which is always
    "yes" or "no".
    """
    fields: dict[str, tuple[str, float]] = {}

    name = NAME_RE.search(text)
    if name and name.group(1).strip():
        fields["name"] = (name.group(1).strip()[:80], 0.7)

    cpf = CPF_RE.search(text)
    if cpf:
        digits = _digits(cpf.group(1))
        fields["cpf"] = (digits, 0.8 if len(digits) == 11 else 0.4)

    rg = RG_LABELED_RE.search(text) or RG_BARE_RE.search(text)
    if rg:
        digits = _digits(rg.group(1))
        fields["rg"] = (digits, 0.7 if len(digits) >= 7 else 0.4)

    birth = BIRTH_DATE_RE.search(text)
    if birth:
        fields["birth_date_text"] = (birth.group(1), 0.65)

    phone = PHONE_LABELED_RE.search(text) or PHONE_BARE_RE.search(text)
    if phone:
        fields["phone"] = (phone.group(1), 0.65)

    total = TOTAL_RE.search(text)
    if total:
        fields["total_raw"] = (total.group(0), 0.6)

    fields["signature_present"] = ("yes" if SIGNATURE_RE.search(text) else "no", 0.5)
    return fields


def _enqueue_next(db: Session, case: Case, job_type: str, job: dict) -> bool:
    # one follow-up per parent job
    payload = job.get("payload_json") or {}
    return job_service.enqueue_job(
        db,
        tenant_id=case.tenant_id,
        job_type=job_type,
        idempotency_key=job_service.build_job_key(job_type, case.id, job["id"]),
        payload_json={"case_id": str(case.id), "correlation_id": payload.get("correlation_id")},
    )


def handle_extract_fields(db: Session, job: dict) -> str:
    case = _load_case(db, job)
    ocr_field = get_case_field(db, case.id, "ocr_text")
    if ocr_field is None:
        return "skipped"

    extracted = extract_fields_from_text(ocr_field.value_text or "")
    for key, (value, confidence) in extracted.items():
        upsert_case_field(
            db,
            case_id=case.id,
            key=key,
            value_text=value,
            source="ocr",
            confidence=confidence,
            updated_by="extract",
        )
    add_timeline_event(
        db,
        tenant_id=case.tenant_id,
        case_id=case.id,
        event_type="fields_extracted",
        message="Campos iniciais extraídos do OCR.",
        actor_type="ai",
        meta={"keys": list(extracted)},
    )
    _enqueue_next(db, case, job_service.VALIDATE_FIELDS, job)
    return "done"


def handle_validate_fields(db: Session, job: dict) -> str:
    """Open pendencies for whatever the case still lacks."""
    case = _load_case(db, job)
    journey = get_journey(db, case.journey_id)
    config = get_tenant_journey_config(db, case.tenant_id, case.journey_id) if journey else {}
    role = "vendor" if case.assigned_vendor_id else "customer"

    missing: list[str] = []
    if get_case_field(db, case.id, "location") is None:
        missing.append("location")
        upsert_pendency(
            db,
            case=case,
            pendency_type="need_location",
            question_text=NEED_LOCATION_QUESTION,
            required=True,
            assigned_to_role=role,
        )
    for key in config_get(config, "automation.required_fields", []) or []:
        field = get_case_field(db, case.id, key)
        if field is None or (field.value_text in (None, "") and field.value_json is None):
            missing.append(key)
            upsert_pendency(
                db,
                case=case,
                pendency_type=f"missing_field:{key}",
                question_text=f"Informe o campo: {key}.",
                required=True,
                assigned_to_role=role,
            )

    if get_case_field(db, case.id, "ocr_text") is not None:
        signature = get_case_field(db, case.id, "signature_present")
        if signature is not None and signature.value_text == "no":
            missing.append("signature")
            upsert_pendency(
                db,
                case=case,
                pendency_type="missing_field:signature",
                question_text=SIGNATURE_QUESTION,
                required=True,
                assigned_to_role=role,
            )
        if get_case_field(db, case.id, "total_raw") is None:
            # does not hold the case back
            upsert_pendency(
                db,
                case=case,
                pendency_type="leader_followup",
                question_text=TOTAL_FOLLOWUP_QUESTION,
                required=False,
                assigned_to_role="leader",
            )

    if journey is not None:
        target = PENDING_VENDOR_STATE if missing else READY_STATE
        if is_valid_state(journey, target):
            set_case_state(db, case, journey, target, reason="validate_fields")
    add_timeline_event(
        db,
        tenant_id=case.tenant_id,
        case_id=case.id,
        event_type="fields_validated",
        message="Campos validados" if not missing else f"Faltando: {', '.join(missing)}",
        meta={"missing": missing},
    )
    return "done"


def format_pendency_list(pendencies) -> str:
    lines = [
        f"{index}) {pendency.question_text}{'' if pendency.required else ' (opcional)'}"
        for index, pendency in enumerate(pendencies, start=1)
    ]
    return "Byfrost.ia — Pendências do pedido:\n\n" + "\n".join(lines)


def _recipient_for(db: Session, case: Case) -> Optional[str]:
    if case.assigned_vendor_id:
        vendor = db.query(Vendor).filter(Vendor.id == case.assigned_vendor_id).first()
        if vendor is not None:
            return vendor.phone_e164
    return case.counterpart_phone


def handle_ask_pendencies(db: Session, job: dict) -> str:
    case = _load_case(db, job)
    role = "vendor" if case.assigned_vendor_id else "customer"
    pendencies = list_open_pendencies(db, case.id, role=role)
    if not pendencies:
        return "skipped"

    instance_id = (case.meta_json or {}).get("instance_id")
    instance = db.query(WaInstance).filter(WaInstance.id == instance_id).first() if instance_id else None
    to = _recipient_for(db, case)
    if instance is None or not to:
        logger.warning(
            "No instance or recipient to ask pendencies",
            extra={"context": {"case_id": str(case.id), "instance_id": instance_id}},
        )
        return "skipped"

    result = send_message(
        db,
        instance=instance,
        to=to,
        text=format_pendency_list(pendencies),
        case_id=case.id,
        correlation_id=f"job:{job['id']}",
        meta={"job_type": job_service.ASK_PENDENCIES},
    )
    if not result.ok:
        raise JobError(result.error or "send failed")
    return "done"


HANDLERS: dict[str, Callable[[Session, dict], str]] = {
    job_service.OCR_IMAGE: handle_ocr_image,
    job_service.EXTRACT_FIELDS: handle_extract_fields,
    job_service.VALIDATE_FIELDS: handle_validate_fields,
    job_service.ASK_PENDENCIES: handle_ask_pendencies,
}


def process_job_batch(
    db: Session,
    *,
    limit: int = 10,
    max_attempts: int = 5,
    retry_backoff_seconds: float = 30.0,
) -> dict[str, Any]:
    """Claim and run one batch. Each job commits on its own."""
    jobs = job_service.claim_pending_jobs(db, limit=limit)
    results = {"claimed": len(jobs), "done": 0, "skipped": 0, "failed": 0, "retry_scheduled": 0}
    for job in jobs:
        handler = HANDLERS.get(job["type"])
        if handler is None:
            job_service.mark_job_status(db, job_id=job["id"], status="failed", last_error=f"unknown type {job['type']}")
            results["failed"] += 1
            continue
        try:
            outcome = handler(db, job)
            db.commit()
        except Exception as exc:
            db.rollback()
            attempts = int(job.get("attempts") or 1)
            error = f"{type(exc).__name__}: {exc}"[:500]
            if attempts >= max_attempts:
                job_service.mark_job_status(db, job_id=job["id"], status="failed", last_error=error)
                results["failed"] += 1
            else:
                job_service.mark_job_status(
                    db,
                    job_id=job["id"],
                    status="pending",
                    last_error=error,
                    retry_in_seconds=retry_backoff_seconds * attempts,
                )
                results["retry_scheduled"] += 1
            logger.warning(
                "Job failed",
                extra={"context": {"job_id": str(job["id"]), "type": job["type"], "attempts": attempts, "error": error}},
            )
            continue

        job_service.mark_job_status(
            db, job_id=job["id"], status="done", last_error="skipped" if outcome == "skipped" else None
        )
        results[outcome if outcome in ("done", "skipped") else "done"] += 1
    return results
