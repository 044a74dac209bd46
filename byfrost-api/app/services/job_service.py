from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Job

logger = get_logger("job_service")

OCR_IMAGE = "OCR_IMAGE"
EXTRACT_FIELDS = "EXTRACT_FIELDS"
VALIDATE_FIELDS = "VALIDATE_FIELDS"
ASK_PENDENCIES = "ASK_PENDENCIES"

JOB_TYPES = (OCR_IMAGE, EXTRACT_FIELDS, VALIDATE_FIELDS, ASK_PENDENCIES)


def build_job_key(job_type: str, case_id, discriminator: Optional[Any] = None) -> str:
    if discriminator is None or discriminator == "":
        return f"{job_type}:{case_id}"
    return f"{job_type}:{case_id}:{discriminator}"


def enqueue_job(
    db: Session,
    *,
    tenant_id,
    job_type: str,
    idempotency_key: str,
    payload_json: dict[str, Any],
    run_after: Optional[datetime] = None,
) -> bool:
    """Insert a pending job unless the key was already enqueued for the tenant."""
    now = datetime.now(timezone.utc)
    stmt = (
        insert(Job)
        .values(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            type=job_type,
            idempotency_key=idempotency_key,
            payload_json=payload_json,
            status="pending",
            attempts=0,
            run_after=run_after or now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "idempotency_key"])
    )
    result = db.execute(stmt)
    inserted = result.rowcount > 0
    if not inserted:
        logger.info(
            "Job already enqueued",
            extra={"context": {"tenant_id": str(tenant_id), "idempotency_key": idempotency_key}},
        )
    return inserted


def claim_pending_jobs(db: Session, *, limit: int = 10) -> list[dict[str, Any]]:
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM job_queue
                    WHERE status = 'pending'
                      AND (run_after IS NULL OR run_after <= NOW())
                    ORDER BY run_after, created_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE job_queue
                SET status = 'processing',
                    attempts = attempts + 1,
                    updated_at = NOW()
                FROM cte
                WHERE job_queue.id = cte.id
                RETURNING job_queue.id,
                          job_queue.tenant_id,
                          job_queue.type,
                          job_queue.idempotency_key,
                          job_queue.payload_json,
                          job_queue.attempts
                """
            ),
            {"limit": limit},
        )
        .mappings()
        .all()
    )
    db.commit()
    return [dict(row) for row in rows]


def mark_job_status(
    db: Session,
    *,
    job_id,
    status: str,
    last_error: Optional[str] = None,
    retry_in_seconds: Optional[float] = None,
) -> None:
    run_after = None
    if retry_in_seconds is not None:
        run_after = datetime.now(timezone.utc) + timedelta(seconds=retry_in_seconds)
    db.execute(
        text(
            """
            UPDATE job_queue
            SET status = :status,
                last_error = :last_error,
                run_after = COALESCE(:run_after, run_after),
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {"id": job_id, "status": status, "last_error": last_error, "run_after": run_after},
    )
    db.commit()


def release_stale_jobs(db: Session, *, stale_seconds: int, max_attempts: int) -> dict[str, int]:
    """Return jobs stuck in processing (worker died mid-run) to the queue."""
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=max(stale_seconds, 0))
    failed = db.execute(
        text(
            """
            UPDATE job_queue
            SET status = 'failed', last_error = 'stale_processing', updated_at = NOW()
            WHERE status = 'processing' AND updated_at < :cutoff AND attempts >= :max_attempts
            """
        ),
        {"cutoff": cutoff, "max_attempts": max_attempts},
    ).rowcount
    released = db.execute(
        text(
            """
            UPDATE job_queue
            SET status = 'pending', run_after = NOW(), updated_at = NOW()
            WHERE status = 'processing' AND updated_at < :cutoff
            """
        ),
        {"cutoff": cutoff},
    ).rowcount
    db.commit()
    if released or failed:
        logger.warning("Stale jobs released", extra={"context": {"released": released, "failed": failed}})
    return {"released": released, "failed": failed}
