from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.jobs import JobBatchResponse
from app.services.job_processor_service import job_worker_settings, process_job_batch
from app.services.job_service import release_stale_jobs

router = APIRouter(tags=["jobs"])


@router.post("/jobs/process", response_model=JobBatchResponse)
def process_jobs(limit: Optional[int] = Query(default=None, ge=1, le=100), db: Session = Depends(get_db)):
    """Drain one batch of queued jobs now, without waiting for the worker."""
    _, default_limit, max_attempts, retry_backoff_seconds, stale_seconds = job_worker_settings()
    stale = release_stale_jobs(db, stale_seconds=stale_seconds, max_attempts=max_attempts)
    results = process_job_batch(
        db,
        limit=limit or default_limit,
        max_attempts=max_attempts,
        retry_backoff_seconds=retry_backoff_seconds,
    )
    return JobBatchResponse(**results, released_stale=stale["released"], failed_stale=stale["failed"])
