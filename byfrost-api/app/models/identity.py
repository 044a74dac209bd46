import uuid

from sqlalchemy import Boolean, Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class UserProfile(Base):
    __tablename__ = "users_profile"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    role = Column(Text, nullable=False)  # admin, manager, supervisor, leader, vendor, employee
    display_name = Column(Text)
    phone_e164 = Column(Text, index=True)
    access_token_hash = Column(Text, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    deleted_at = Column(TIMESTAMP(timezone=True))


class Vendor(Base):
    __tablename__ = "vendors"
    __table_args__ = (UniqueConstraint("tenant_id", "phone_e164", name="uq_vendors_tenant_phone"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    phone_e164 = Column(Text, nullable=False)
    display_name = Column(Text)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class CustomerAccount(Base):
    __tablename__ = "customer_accounts"
    __table_args__ = (UniqueConstraint("tenant_id", "phone_e164", name="uq_customer_accounts_tenant_phone"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    phone_e164 = Column(Text, nullable=False)
    name = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
