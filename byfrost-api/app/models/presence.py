import uuid

from sqlalchemy import Boolean, Column, Float, ForeignKey, Index, Integer, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class PresenceLocation(Base):
    __tablename__ = "presence_locations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    name = Column(Text, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class PresencePolicy(Base):
    __tablename__ = "presence_policies"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    location_id = Column(UUID(as_uuid=True), ForeignKey("presence_locations.id"))
    radius_meters = Column(Integer, nullable=False, default=100)
    lateness_tolerance_minutes = Column(Integer, nullable=False, default=10)
    break_required = Column(Boolean, nullable=False, default=True)
    allow_outside_radius = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class PresenceEmployeeConfig(Base):
    __tablename__ = "presence_employee_configs"
    __table_args__ = (UniqueConstraint("tenant_id", "employee_id", name="uq_presence_employee_configs"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    employee_id = Column(UUID(as_uuid=True), nullable=False)
    scheduled_start_hhmm = Column(Text)
    planned_minutes = Column(Integer)


class TimePunch(Base):
    __tablename__ = "time_punches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    employee_id = Column(UUID(as_uuid=True), nullable=False)
    case_id = Column(UUID(as_uuid=True), ForeignKey("cases.id"), nullable=False, index=True)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)
    type = Column(Text, nullable=False)  # ENTRY, BREAK_START, BREAK_END, EXIT
    latitude = Column(Float)
    longitude = Column(Float)
    accuracy_meters = Column(Float)
    distance_from_location_m = Column(Float)
    within_radius = Column(Boolean)
    status = Column(Text, nullable=False, default="VALID")  # VALID, VALID_WITH_EXCEPTION
    source = Column(Text, nullable=False, default="APP")  # APP, WHATSAPP, ADMIN
    meta_json = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class TimePunchAdjustment(Base):
    __tablename__ = "time_punch_adjustments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    punch_id = Column(UUID(as_uuid=True), ForeignKey("time_punches.id"), nullable=False)
    case_id = Column(UUID(as_uuid=True), ForeignKey("cases.id"), nullable=False)
    adjusted_by = Column(UUID(as_uuid=True))
    previous_timestamp = Column(TIMESTAMP(timezone=True))
    new_timestamp = Column(TIMESTAMP(timezone=True))
    previous_type = Column(Text)
    new_type = Column(Text)
    reason = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class BankHourLedger(Base):
    __tablename__ = "bank_hour_ledger"
    __table_args__ = (
        Index(
            "uq_bank_hour_ledger_auto_case",
            "case_id",
            unique=True,
            postgresql_where=text("source = 'AUTO'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    employee_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    case_id = Column(UUID(as_uuid=True), ForeignKey("cases.id"))
    minutes_delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source = Column(Text, nullable=False, default="AUTO")  # AUTO, MANUAL
    note = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class PresencePendingCommand(Base):
    """WhatsApp clock-in request waiting for the employee's location."""

    __tablename__ = "presence_pending_commands"
    __table_args__ = (UniqueConstraint("tenant_id", "employee_id", name="uq_presence_pending_commands"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    instance_id = Column(UUID(as_uuid=True))
    employee_id = Column(UUID(as_uuid=True), nullable=False)
    phone_e164 = Column(Text, nullable=False)
    punch_type = Column(Text)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
