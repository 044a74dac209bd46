import uuid

from sqlalchemy import Boolean, Column, Date, Float, ForeignKey, Index, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Case(Base):
    __tablename__ = "cases"
    __table_args__ = (
        Index(
            "uq_cases_open_counterpart",
            "tenant_id",
            "journey_id",
            "counterpart_phone",
            unique=True,
            postgresql_where=text("status = 'open' AND deleted_at IS NULL AND counterpart_phone IS NOT NULL"),
        ),
        Index(
            "uq_cases_presence_day",
            "tenant_id",
            "case_type",
            "entity_type",
            "entity_id",
            "case_date",
            unique=True,
            postgresql_where=text("case_type = 'PRESENCE_DAY'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    journey_id = Column(UUID(as_uuid=True), ForeignKey("journeys.id"), nullable=False)
    case_type = Column(Text, nullable=False)  # order, crm, PRESENCE_DAY
    status = Column(Text, nullable=False, default="open")  # open, closed
    state = Column(Text, nullable=False)
    title = Column(Text)
    created_by_channel = Column(Text)  # whatsapp, app, admin
    created_by_vendor_id = Column(UUID(as_uuid=True))
    assigned_vendor_id = Column(UUID(as_uuid=True))
    customer_id = Column(UUID(as_uuid=True))
    assigned_user_id = Column(UUID(as_uuid=True))
    counterpart_phone = Column(Text)
    entity_type = Column(Text)
    entity_id = Column(UUID(as_uuid=True))
    case_date = Column(Date)
    meta_json = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at = Column(TIMESTAMP(timezone=True))

    pendencies = relationship("Pendency", back_populates="case")


class CaseField(Base):
    __tablename__ = "case_fields"
    __table_args__ = (UniqueConstraint("case_id", "key", name="uq_case_fields_case_key"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    case_id = Column(UUID(as_uuid=True), ForeignKey("cases.id"), nullable=False)
    key = Column(Text, nullable=False)
    value_text = Column(Text)
    value_json = Column(JSONB)
    confidence = Column(Float)
    source = Column(Text)  # whatsapp, ocr, admin
    last_updated_by = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class CaseAttachment(Base):
    __tablename__ = "case_attachments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    case_id = Column(UUID(as_uuid=True), ForeignKey("cases.id"), nullable=False)
    kind = Column(Text, nullable=False)  # image, audio, video, document
    storage_path = Column(Text, nullable=False)
    meta_json = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Pendency(Base):
    __tablename__ = "pendencies"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    case_id = Column(UUID(as_uuid=True), ForeignKey("cases.id"), nullable=False, index=True)
    type = Column(Text, nullable=False)
    assigned_to_role = Column(Text, nullable=False, default="vendor")
    question_text = Column(Text, nullable=False)
    required = Column(Boolean, nullable=False, default=True)
    status = Column(Text, nullable=False, default="open")  # open, answered, waived
    answered_text = Column(Text)
    answered_payload_json = Column(JSONB)
    due_at = Column(TIMESTAMP(timezone=True))
    answered_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    case = relationship("Case", back_populates="pendencies")


class TimelineEvent(Base):
    __tablename__ = "timeline_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    case_id = Column(UUID(as_uuid=True), ForeignKey("cases.id"), nullable=False, index=True)
    event_type = Column(Text, nullable=False)
    actor_type = Column(Text, nullable=False, default="system")  # system, vendor, customer, admin, employee
    actor_id = Column(Text)
    message = Column(Text)
    meta_json = Column(JSONB, nullable=False, default=dict)
    occurred_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
