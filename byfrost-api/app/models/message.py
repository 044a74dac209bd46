import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class WaMessage(Base):
    __tablename__ = "wa_messages"
    __table_args__ = (
        Index(
            "uq_wa_messages_correlation",
            "tenant_id",
            "instance_id",
            "direction",
            "correlation_id",
            unique=True,
            postgresql_where=text("correlation_id IS NOT NULL"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    instance_id = Column(UUID(as_uuid=True), ForeignKey("wa_instances.id"))
    case_id = Column(UUID(as_uuid=True), ForeignKey("cases.id"))
    direction = Column(Text, nullable=False)  # inbound, outbound
    type = Column(Text, nullable=False)  # text, image, audio, video, document, location
    from_phone = Column(Text)
    to_phone = Column(Text)
    body_text = Column(Text)
    media_url = Column(Text)
    payload_json = Column(JSONB, nullable=False, default=dict)
    correlation_id = Column(Text)
    delivery_status = Column(Text)  # pending, prepared, sent, failed
    delivery_error = Column(Text)
    occurred_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class WebhookInbox(Base):
    __tablename__ = "wa_webhook_inbox"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True))
    instance_id = Column(UUID(as_uuid=True))
    zapi_instance_id = Column(Text)
    direction = Column(Text)
    wa_type = Column(Text)
    from_phone = Column(Text)
    to_phone = Column(Text)
    ok = Column(Boolean, nullable=False, default=False)
    http_status = Column(Integer)
    reason = Column(Text)
    correlation_id = Column(Text)
    payload_json = Column(JSONB, nullable=False, default=dict)
    journey_id = Column(UUID(as_uuid=True))
    meta_json = Column(JSONB, nullable=False, default=dict)
    received_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
