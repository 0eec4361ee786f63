# models.py — Database models for the CRM tenant gateway
# - Organizations are the tenant root; every CRM table carries organization_id
#   (NOT NULL, FK with ON DELETE CASCADE, indexed)
# - Auth identities (users) are separate from CRM principals (sales)
# - API keys are stored as SHA-256 digests only and soft-deleted via revoked_at
# - Audit log for key management and master-key gateway traffic

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, CheckConstraint,
)
from sqlalchemy.orm import declarative_base, declared_attr, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_uuid():
    return str(uuid.uuid4())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ============================================================
# ENUMS
# ============================================================

class KeyType(str, PyEnum):
    MASTER = "master"
    ORGANIZATION = "organization"


class AuditEventType(str, PyEnum):
    # Identity events
    USER_SIGNUP = "auth.user.signup"
    USER_LOGIN = "auth.user.login"
    USER_INVITED = "auth.user.invited"
    USER_UPDATED = "auth.user.updated"
    SERVICE_ACCOUNT_CREATED = "auth.service_account.created"
    # Org events
    ORG_CREATED = "org.created"
    ORG_UPDATED = "org.updated"
    # API key events
    API_KEY_CREATED = "api_key.created"
    API_KEY_PROVISIONED = "api_key.provisioned"
    API_KEY_REVOKED = "api_key.revoked"
    # Gateway events
    GATEWAY_MASTER_ACCESS = "gateway.master.access"


# ============================================================
# ORGANIZATIONS
# ============================================================

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    settings = Column(JSON, nullable=False, default=dict)
    logo_light = Column(String, nullable=True)
    logo_dark = Column(String, nullable=True)
    disabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    sales = relationship("Sale", back_populates="organization", passive_deletes=True)


# ============================================================
# TENANT MIXIN
# ============================================================

class TenantScoped:
    """Rows owned by exactly one organization.

    Every model using this mixin is subject to the row-level policy engine
    and to insert-time auto-population (see policy.py).
    """

    @declared_attr
    def organization_id(cls):
        return Column(
            Integer,
            ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )


class SalesOwned:
    """Rows carrying an owning principal, filled in from the session scope."""

    @declared_attr
    def sales_id(cls):
        return Column(Integer, ForeignKey("sales.id", ondelete="SET NULL"), nullable=True, index=True)


# ============================================================
# AUTH IDENTITIES & PRINCIPALS
# ============================================================

class AuthIdentity(Base):
    """Backing identity; the JWT subject is its id."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=True)
    raw_user_meta_data = Column(JSON, nullable=False, default=dict)
    banned = Column(Boolean, nullable=False, default=False)
    last_sign_in_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    sale = relationship("Sale", back_populates="identity", uselist=False, passive_deletes=True)


class Sale(TenantScoped, Base):
    """CRM principal: one identity bound to exactly one organization."""
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=False)
    avatar = Column(JSON, nullable=True)
    administrator = Column(Boolean, nullable=False, default=False)
    disabled = Column(Boolean, nullable=False, default=False)
    is_service_account = Column(Boolean, nullable=False, default=False)

    organization = relationship("Organization", back_populates="sales")
    identity = relationship("AuthIdentity", back_populates="sale")

    __table_args__ = (
        Index("idx_sales_is_service_account", "is_service_account"),
    )


# ============================================================
# API KEYS
# ============================================================

class APIKey(Base):
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    key_hash = Column(String, nullable=False, unique=True, index=True)
    key_prefix = Column(String, nullable=False)  # first 12 chars + "..."
    type = Column(
        SQLEnum(KeyType, name="api_key_type", values_callable=_enum_values),
        nullable=False,
    )
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    scopes = Column(JSON, nullable=False, default=lambda: ["read", "write"])
    created_by = Column(Integer, ForeignKey("sales.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "(type = 'organization' AND organization_id IS NOT NULL) "
            "OR (type = 'master' AND organization_id IS NULL)",
            name="ck_api_keys_type_organization",
        ),
    )


# ============================================================
# AUDIT LOG
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(
        SQLEnum(AuditEventType, name="audit_event_type", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    actor_sales_id = Column(Integer, ForeignKey("sales.id", ondelete="SET NULL"), nullable=True)
    api_key_id = Column(Integer, ForeignKey("api_keys.id", ondelete="SET NULL"), nullable=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    request_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# CRM RECORDS (tenant-scoped)
# ============================================================

class Company(TenantScoped, SalesOwned, Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    sector = Column(String, nullable=True)
    size = Column(Integer, nullable=True)
    linkedin_url = Column(String, nullable=True)
    website = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    address = Column(String, nullable=True)
    zipcode = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state_abbr = Column(String, nullable=True)
    country = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    revenue = Column(String, nullable=True)
    tax_identifier = Column(String, nullable=True)
    logo = Column(JSON, nullable=True)
    context_links = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Contact(TenantScoped, SalesOwned, Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    gender = Column(String, nullable=True)
    title = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    background = Column(Text, nullable=True)
    avatar = Column(JSON, nullable=True)
    status = Column(String, nullable=True)
    has_newsletter = Column(Boolean, nullable=True)
    tags = Column(JSON, nullable=True)
    linkedin_url = Column(String, nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=True, index=True)
    first_seen = Column(DateTime(timezone=True), nullable=True)
    last_seen = Column(DateTime(timezone=True), nullable=True)


class ContactNote(TenantScoped, SalesOwned, Base):
    __tablename__ = "contact_notes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True)
    text = Column(Text, nullable=True)
    status = Column(String, nullable=True)
    attachments = Column(JSON, nullable=True)
    date = Column(DateTime(timezone=True), default=utcnow)


class Deal(TenantScoped, SalesOwned, Base):
    __tablename__ = "deals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=True, index=True)
    contact_ids = Column(JSON, nullable=True)
    category = Column(String, nullable=True)
    stage = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    amount = Column(Integer, nullable=True)
    index = Column(Integer, nullable=True)
    expected_closing_date = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class DealNote(TenantScoped, SalesOwned, Base):
    __tablename__ = "deal_notes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=True)
    text = Column(Text, nullable=True)
    attachments = Column(JSON, nullable=True)
    date = Column(DateTime(timezone=True), default=utcnow)


class Task(TenantScoped, SalesOwned, Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=True, index=True)
    type = Column(String, nullable=True)
    text = Column(Text, nullable=True)
    due_date = Column(Date, nullable=True)
    done_date = Column(DateTime(timezone=True), nullable=True)


class Tag(TenantScoped, Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=False, default="#eddcd2")
