"""SQLAlchemy ORM models and enums.

This module defines the tenant-scoped sales analytics schema using UUID primary
keys. Every activity row, contact and attribution session belongs to exactly
one account; queries never join across accounts.

Derived columns:
    - local_date / local_week / local_month on activity rows and contacts are
      written only by services/local_date_service.py
    - setter_user_id / sales_rep_user_id are written only by
      services/identity_resolution_service.py (fill-only)
    - attribution_sessions.quality is written only by
      services/attribution_linker.py (compare-and-set, never lowered)
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Enum,
    Integer,
    ForeignKey,
    Numeric,
    JSON,
    Boolean,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class AccessRoleEnum(str, enum.Enum):
    admin = "admin"
    moderator = "moderator"
    setter = "setter"
    sales_rep = "sales_rep"


class CallOutcomeEnum(str, enum.Enum):
    show = "Show"
    no_show = "No Show"
    reschedule = "Reschedule"
    cancel = "Cancel"


class ShowOutcomeEnum(str, enum.Enum):
    won = "won"
    lost = "lost"
    follow_up = "follow_up"


class AttributionQualityEnum(str, enum.Enum):
    """Confidence tier of a session-to-contact link.

    Ordered lowest to highest; see services/attribution_linker.QUALITY_RANK.
    """
    none = "none"
    heuristic = "heuristic"
    utm = "utm"
    exact = "exact"


class AttributionMethodEnum(str, enum.Enum):
    utm_direct = "utm_direct"
    fbclid_lookup = "fbclid_lookup"
    gclid_lookup = "gclid_lookup"
    pixel_bridge = "pixel_bridge"
    fingerprint_match = "fingerprint_match"
    referrer_match = "referrer_match"


# Tenancy & access ----------------------------------------------

class Account(Base):
    """Account is a tenant of the platform.

    `business_timezone` is the IANA zone used to bucket every timestamp of the
    account into local calendar dates. Changing it requires a bucket recompute.
    """
    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    business_timezone = Column(String, nullable=False, default="UTC")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    access = relationship("AccountAccess", back_populates="account", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class User(Base):
    """A platform user (profile). Users reach accounts through AccountAccess."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String, nullable=True)
    is_global_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    access = relationship("AccountAccess", back_populates="user", cascade="all, delete-orphan")

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or "Unknown"

    def __str__(self):
        return self.display_name


class AccountAccess(Base):
    """Role of a user inside one account."""
    __tablename__ = "account_access"
    __table_args__ = (
        UniqueConstraint("user_id", "account_id", name="uq_account_access_user_account"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    role = Column(Enum(AccessRoleEnum, values_callable=_enum_values), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="access")
    account = relationship("Account", back_populates="access")

    def __str__(self):
        return f"{self.user_id}@{self.account_id} ({self.role})"


class CrmUser(Base):
    """Per-CRM-user summary used to drive the pending-invitation flow.

    Rows are keyed by the CRM's own user id. `user_id` is set once the CRM user
    has been mapped onto a platform user; the Identity Resolver treats that
    mapping as authoritative over name matching.
    """
    __tablename__ = "crm_users"
    __table_args__ = (
        UniqueConstraint("account_id", "crm_user_id", name="uq_crm_users_account_crm_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    crm_user_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    role = Column(String, nullable=True)  # Raw CRM role string
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    is_invited = Column(Boolean, nullable=False, default=False)
    appointment_count = Column(Integer, nullable=False, default=0)
    dial_count = Column(Integer, nullable=False, default=0)
    discovery_count = Column(Integer, nullable=False, default=0)
    last_activity_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return self.name or self.email or self.crm_user_id


# Contacts & activity -------------------------------------------

class Contact(Base):
    """A CRM contact (lead).

    `attribution_source` is the first-touch snapshot and is written once.
    `last_attribution_source` is replaced on each subsequent linked touch.
    Both are dicts keyed like AttributionSession columns (utm_source, fbclid,
    landing_url, referrer, ...).
    """
    __tablename__ = "contacts"
    __table_args__ = (
        Index("ix_contacts_account_local_date", "account_id", "local_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    crm_contact_id = Column(String, nullable=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    attribution_source = Column(JSON, nullable=True)
    last_attribution_source = Column(JSON, nullable=True)
    crm_created_at = Column(DateTime, nullable=True)  # UTC, from the CRM
    local_date = Column(Date, nullable=True)
    local_week = Column(Date, nullable=True)
    local_month = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Source timestamp for local date buckets
    timestamp_field = "crm_created_at"

    def __str__(self):
        return self.name or self.email or str(self.id)


class Dial(Base):
    """An outbound call made by a setter."""
    __tablename__ = "dials"
    __table_args__ = (
        Index("ix_dials_account_local_date", "account_id", "local_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=True)

    setter = Column(String, nullable=True)
    crm_setter_user_id = Column(String, nullable=True)
    setter_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    date_called = Column(DateTime, nullable=False)  # UTC
    answered = Column(Boolean, nullable=False, default=False)
    meaningful_conversation = Column(Boolean, nullable=False, default=False)
    booked = Column(Boolean, nullable=False, default=False)
    duration_seconds = Column(Integer, nullable=True)

    local_date = Column(Date, nullable=True)
    local_week = Column(Date, nullable=True)
    local_month = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    timestamp_field = "date_called"


class Appointment(Base):
    """A sales call booked by a setter and taken by a sales rep."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_account_local_date", "account_id", "local_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=True)

    setter = Column(String, nullable=True)
    crm_setter_user_id = Column(String, nullable=True)
    setter_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    sales_rep = Column(String, nullable=True)
    crm_sales_rep_user_id = Column(String, nullable=True)
    sales_rep_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    date_booked = Column(DateTime, nullable=True)  # When the booking was made (UTC)
    date_booked_for = Column(DateTime, nullable=False)  # Scheduled call time (UTC)
    call_outcome = Column(Enum(CallOutcomeEnum, values_callable=_enum_values), nullable=True)
    show_outcome = Column(Enum(ShowOutcomeEnum, values_callable=_enum_values), nullable=True)
    cash_collected = Column(Numeric(12, 2), nullable=True)
    total_sales_value = Column(Numeric(12, 2), nullable=True)

    local_date = Column(Date, nullable=True)
    local_week = Column(Date, nullable=True)
    local_month = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    timestamp_field = "date_booked_for"


class Discovery(Base):
    """A discovery (qualification) call."""
    __tablename__ = "discoveries"
    __table_args__ = (
        Index("ix_discoveries_account_local_date", "account_id", "local_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=True)

    setter = Column(String, nullable=True)
    crm_setter_user_id = Column(String, nullable=True)
    setter_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    sales_rep = Column(String, nullable=True)
    crm_sales_rep_user_id = Column(String, nullable=True)
    sales_rep_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    date_booked_for = Column(DateTime, nullable=False)  # UTC
    call_outcome = Column(Enum(CallOutcomeEnum, values_callable=_enum_values), nullable=True)
    show_outcome = Column(Enum(ShowOutcomeEnum, values_callable=_enum_values), nullable=True)

    local_date = Column(Date, nullable=True)
    local_week = Column(Date, nullable=True)
    local_month = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    timestamp_field = "date_booked_for"


# Tables carrying local date buckets, in recompute order
BUCKETED_MODELS = (Dial, Appointment, Discovery, Contact)

# Activity tables, by the role columns they carry
ACTIVITY_MODELS = (Dial, Appointment, Discovery)


# Attribution ---------------------------------------------------

class AttributionSession(Base):
    """An anonymous pre-contact marketing touch.

    Created on first touch (keyed by the browser `session_id`), updated in place
    on later touches and purged once `expires_at` passes.

    Lifecycle:
        quality == none  -> unlinked, contact_id is NULL
        quality  > none  -> linked to contact_id at that confidence tier
    """
    __tablename__ = "attribution_sessions"
    __table_args__ = (
        Index("ix_attribution_sessions_account_expires", "account_id", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(String, unique=True, nullable=False)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)

    # Click identifiers
    fbclid = Column(String, nullable=True)
    gclid = Column(String, nullable=True)
    fbc = Column(String, nullable=True)
    fbp = Column(String, nullable=True)

    # UTM parameters
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    utm_content = Column(String, nullable=True)
    utm_term = Column(String, nullable=True)
    utm_id = Column(String, nullable=True)

    # Meta ad hierarchy (from URL params on paid clicks)
    meta_campaign_id = Column(String, nullable=True)
    meta_ad_set_id = Column(String, nullable=True)
    meta_ad_id = Column(String, nullable=True)

    landing_url = Column(String, nullable=True)
    referrer_url = Column(String, nullable=True)
    fingerprint_id = Column(String, nullable=True)

    quality = Column(
        Enum(AttributionQualityEnum, values_callable=_enum_values),
        nullable=False,
        default=AttributionQualityEnum.none,
    )
    method = Column(Enum(AttributionMethodEnum, values_callable=_enum_values), nullable=True)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=True, index=True)

    first_visit_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_activity_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
    linked_at = Column(DateTime, nullable=True)

    def __str__(self):
        return self.session_id
