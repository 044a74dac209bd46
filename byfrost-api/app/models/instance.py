import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class WaInstance(Base):
    __tablename__ = "wa_instances"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(Text)
    zapi_instance_id = Column(Text, nullable=False, index=True)
    zapi_token = Column(Text)
    phone_number = Column(Text)
    webhook_secret = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, inactive
    enable_v1_business = Column(Boolean, nullable=False, default=True)
    enable_v2_audit = Column(Boolean, nullable=False, default=False)
    default_journey_id = Column(UUID(as_uuid=True), ForeignKey("journeys.id"))
    assigned_user_id = Column(UUID(as_uuid=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at = Column(TIMESTAMP(timezone=True))
