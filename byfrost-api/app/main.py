import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal, get_db
from app.logging_config import get_logger, setup_logging
from app.models import Case, Job, TimePunch, WaInstance, WaMessage
from app.routers import cases, jobs, outbound, presence, webhook
from app.services.job_processor_service import job_worker_settings, process_job_batch
from app.services.job_service import release_stale_jobs

setup_logging(settings.log_level)

app = FastAPI(
    title="Byfrost API",
    description="WhatsApp routing, case engine and presence clock for Byfrost tenants",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(outbound.router)
app.include_router(presence.router)
app.include_router(cases.router)
app.include_router(jobs.router)

job_logger = get_logger("job_worker")
_job_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_job_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("JOB_WORKER_ENABLED"), default=True)


def _run_job_batch() -> dict:
    _, limit, max_attempts, retry_backoff_seconds, stale_seconds = job_worker_settings()
    db = SessionLocal()
    try:
        release_stale_jobs(db, stale_seconds=stale_seconds, max_attempts=max_attempts)
        return process_job_batch(
            db,
            limit=limit,
            max_attempts=max_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
        )
    finally:
        db.close()


async def _job_worker_loop() -> None:
    while True:
        try:
            interval_seconds = job_worker_settings()[0]
            await asyncio.sleep(interval_seconds)
            # Handlers call Z-API and Vision synchronously.
            results = await asyncio.to_thread(_run_job_batch)
            if results["claimed"]:
                job_logger.info("Job worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            job_logger.error(
                "Job worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_job_worker() -> None:
    global _job_worker_task
    if not _is_job_worker_enabled():
        return
    if _job_worker_task is None or _job_worker_task.done():
        _job_worker_task = asyncio.create_task(_job_worker_loop())
        job_logger.info("Job worker started")


@app.on_event("shutdown")
async def stop_job_worker() -> None:
    global _job_worker_task
    if _job_worker_task is None:
        return
    _job_worker_task.cancel()
    try:
        await _job_worker_task
    except asyncio.CancelledError:
        pass
    _job_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "instances": db.query(WaInstance).count(),
        "cases": db.query(Case).count(),
        "messages": db.query(WaMessage).count(),
        "jobs": db.query(Job).count(),
        "time_punches": db.query(TimePunch).count(),
    }
