import uuid

from sqlalchemy import Column, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class Job(Base):
    __tablename__ = "job_queue"
    __table_args__ = (UniqueConstraint("tenant_id", "idempotency_key", name="uq_job_queue_tenant_key"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    type = Column(Text, nullable=False)  # OCR_IMAGE, EXTRACT_FIELDS, VALIDATE_FIELDS, ASK_PENDENCIES
    idempotency_key = Column(Text, nullable=False)
    payload_json = Column(JSONB, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="pending")  # pending, processing, done, failed
    attempts = Column(Integer, nullable=False, default=0)
    run_after = Column(TIMESTAMP(timezone=True), server_default=func.now())
    last_error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
