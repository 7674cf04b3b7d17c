"""SQLAlchemy ORM models and enums.

This module defines the attribution engine schema using UUID primary keys and
explicit relationships. Provider credentials are stored encrypted in
`api_credentials` so the domain tables never hold plaintext secrets.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column, String, DateTime, Date, Enum, Integer, ForeignKey, Numeric, JSON, Text,
    Boolean, Float, UniqueConstraint, Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class RoleEnum(str, enum.Enum):
    owner = "Owner"
    admin = "Admin"
    viewer = "Viewer"


class PlatformEnum(str, enum.Enum):
    actblue = "actblue"  # Payment processor (transaction ledger source of truth)
    meta = "meta"
    sms = "sms"
    email = "email"
    other = "other"


class TouchpointTypeEnum(str, enum.Enum):
    ad = "ad"
    sms = "sms"
    email = "email"
    organic = "organic"


class MatchMethodEnum(str, enum.Enum):
    """How an attribution record was resolved.

    - exact: refcode/key equality (including refcode mapping hits)
    - fuzzy: pattern or word-overlap similarity
    - click_id: click identifier equality with a touchpoint
    - fbclid: browser click cookie equality with a touchpoint
    - none: no campaign could be resolved
    """
    exact = "exact"
    fuzzy = "fuzzy"
    click_id = "click_id"
    fbclid = "fbclid"
    none = "none"


class AttributionGranularityEnum(str, enum.Enum):
    refcode = "refcode"
    transaction = "transaction"


class ConversionEventStatusEnum(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    failed = "failed"
    superseded = "superseded"        # Replaced by a corrected resend
    misattributed = "misattributed"  # Flagged by the mismatch detector


class BackfillJobStatusEnum(str, enum.Enum):
    running = "running"
    completed = "completed"
    completed_with_errors = "completed_with_errors"
    failed = "failed"
    cancelled = "cancelled"


class BackfillChunkStatusEnum(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    retrying = "retrying"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_JOB_STATUSES = {
    BackfillJobStatusEnum.completed.value,
    BackfillJobStatusEnum.completed_with_errors.value,
    BackfillJobStatusEnum.failed.value,
    BackfillJobStatusEnum.cancelled.value,
}

TERMINAL_CHUNK_STATUSES = {
    BackfillChunkStatusEnum.completed.value,
    BackfillChunkStatusEnum.failed.value,
    BackfillChunkStatusEnum.cancelled.value,
}


# Core models ----------------------------------------------------

class Organization(Base):
    """Organization represents a campaign committee (tenant).

    All data (transactions, touchpoints, attribution, backfills) belongs to
    exactly one organization.
    """
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    memberships = relationship("OrganizationMember", back_populates="organization", cascade="all, delete-orphan")
    credentials = relationship("ApiCredential", back_populates="organization", cascade="all, delete-orphan")
    backfill_jobs = relationship("BackfillJob", back_populates="organization")

    # This is used to display the model in the admin interface.
    def __str__(self):
        return self.name


class User(Base):
    """User represents a person who can access the system.

    `is_superuser` marks platform admins, who may operate on any organization.
    """
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    is_superuser = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    memberships = relationship("OrganizationMember", back_populates="user", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name} ({self.email})"


class OrganizationMember(Base):
    """Join table mapping users to organizations with a role."""
    __tablename__ = "organization_members"
    __table_args__ = (UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    role = Column(Enum(RoleEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    status = Column(String, default="active")  # active, removed
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="memberships")
    user = relationship("User", back_populates="memberships")


class ApiCredential(Base):
    """Encrypted provider credential bundle.

    WHAT:
        Stores a JSON credential object per (organization, platform), encrypted
        with Fernet. Processor credentials carry `username`/`password`, Meta
        credentials carry `access_token`/`ad_account_id`.
    WHY:
        Reconciliation and ingestion need plaintext credentials only at call time.
    REFERENCES:
        - backend/donorlink/security.py (encrypt_secret / decrypt_secret)
    """
    __tablename__ = "api_credentials"
    __table_args__ = (UniqueConstraint("organization_id", "platform", name="uq_api_credential_org_platform"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    platform = Column(String, nullable=False)
    encrypted_credentials = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="credentials")

    def __str__(self):
        return f"{self.platform} credential ({'active' if self.is_active else 'inactive'})"


# Ledgers --------------------------------------------------------

class Transaction(Base):
    """Immutable donation record from the payment processor.

    Only re-ingestion of the same external row, phone hashing and click
    identifier recovery write to an existing row.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("organization_id", "transaction_id", name="uq_transaction_org_external_id"),
        Index("ix_transactions_org_date", "organization_id", "transaction_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    transaction_id = Column(String, nullable=False)  # lineitem_id, falling back to receipt_id
    transaction_date = Column(DateTime, nullable=False)

    amount = Column(Numeric(12, 2), nullable=False, default=0)
    fee = Column(Numeric(12, 2), nullable=True)
    net_amount = Column(Numeric(12, 2), nullable=True)

    donor_email = Column(String, nullable=True, index=True)
    donor_name = Column(String, nullable=True)
    phone_hash = Column(String, nullable=True)

    refcode = Column(String, nullable=True, index=True)
    refcode2 = Column(String, nullable=True)
    click_id = Column(String, nullable=True)
    fbclid = Column(String, nullable=True)

    is_recurring = Column(Boolean, default=False)
    recurring_duration = Column(Integer, nullable=True)
    transaction_type = Column(String, default="donation")  # donation, refund
    source_campaign = Column(String, nullable=True)  # meta, sms, email, organic, google

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.transaction_id} ${self.amount} ({self.refcode or 'no refcode'})"


class Touchpoint(Base):
    """A donor's exposure to a marketing channel before donating.

    WHAT: Landing-page capture or SMS send, read-only after creation
    WHY: The correlator links donations to these by click id, cookie or email
    """
    __tablename__ = "touchpoints"
    __table_args__ = (
        Index("ix_touchpoints_org_occurred", "organization_id", "occurred_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    touchpoint_type = Column(String, nullable=False, default=TouchpointTypeEnum.ad.value)

    donor_email = Column(String, nullable=True, index=True)
    refcode = Column(String, nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)

    # Channel identifiers: fbclid, fbc, fbp, click_id
    touchpoint_metadata = Column(JSON, nullable=True)

    occurred_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"{self.touchpoint_type} touchpoint at {self.occurred_at}"


class MetaCampaign(Base):
    """Campaign/ad/creative reference supplied by the ad platform."""
    __tablename__ = "meta_campaigns"
    __table_args__ = (
        UniqueConstraint("organization_id", "campaign_id", "ad_id", name="uq_meta_campaign_org_campaign_ad"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    campaign_id = Column(String, nullable=False)
    campaign_name = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    creative_id = Column(String, nullable=True)
    refcode = Column(String, nullable=True)  # Parsed from the ad's url_tags
    status = Column(String, nullable=True)
    ad_updated_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return self.campaign_name or self.campaign_id


class RefcodeMapping(Base):
    """Declared or learned (organization, refcode) → campaign association.

    Last writer wins on refresh: a refcode shared by multiple ads resolves to
    the most recently active one.
    """
    __tablename__ = "refcode_mappings"
    __table_args__ = (UniqueConstraint("organization_id", "refcode", name="uq_refcode_mapping_org_refcode"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    refcode = Column(String, nullable=False)
    platform = Column(String, nullable=False, default=PlatformEnum.meta.value)
    campaign_id = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    creative_id = Column(String, nullable=True)
    source = Column(String, default="declared")  # declared, learned
    confidence = Column(Float, nullable=True)  # learned only: the auto-match confidence
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.refcode} → {self.campaign_name or self.campaign_id}"


class AttributionRecord(Base):
    """Attribution output keyed by refcode or by transaction.

    WHAT: Resolved platform/campaign/ad/creative with confidence and method
    WHY: Dashboards read revenue per campaign from here
    INVARIANTS:
        - 0 <= confidence <= 1
        - match_method == none implies confidence == 0 and no campaign
    """
    __tablename__ = "attribution_records"
    __table_args__ = (
        UniqueConstraint("organization_id", "granularity", "attribution_key", name="uq_attribution_org_granularity_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    granularity = Column(String, nullable=False)  # refcode, transaction
    attribution_key = Column(String, nullable=False)

    refcode = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)

    platform = Column(String, nullable=True)
    campaign_id = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    creative_id = Column(String, nullable=True)

    confidence = Column(Float, nullable=False, default=0.0)
    match_method = Column(String, nullable=False, default=MatchMethodEnum.none.value)
    match_reason = Column(String, nullable=True)

    # Aggregates (refcode granularity only)
    attributed_revenue = Column(Numeric(14, 2), nullable=True)
    attributed_transactions = Column(Integer, nullable=True)

    is_auto_matched = Column(Boolean, default=False)
    last_matched_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.attribution_key} → {self.campaign_name or self.campaign_id or 'none'} ({self.match_method}, {self.confidence:.2f})"


class ConversionEvent(Base):
    """Conversion event sent (or queued) to the ad platform.

    `source_id` is the external transaction id the event claims to represent.
    """
    __tablename__ = "conversion_events"
    __table_args__ = (
        Index("ix_conversion_events_org_status", "organization_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    event_id = Column(String, nullable=False)
    event_name = Column(String, nullable=False, default="Purchase")
    source_id = Column(String, nullable=True)
    fbc = Column(String, nullable=True)
    fbp = Column(String, nullable=True)
    status = Column(String, nullable=False, default=ConversionEventStatusEnum.pending.value)
    event_metadata = Column(JSON, nullable=True)
    event_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.event_name} {self.event_id} ({self.status})"


# Backfill -------------------------------------------------------

class BackfillJob(Base):
    """One historical ingestion run split into chunks.

    Terminal states: completed, completed_with_errors, failed, cancelled.
    No chunk is processed once the job is terminal.
    """
    __tablename__ = "backfill_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    task_name = Column(String, nullable=False, default="transaction_backfill")
    status = Column(String, nullable=False, default=BackfillJobStatusEnum.running.value)

    total_chunks = Column(Integer, nullable=False, default=0)
    processed_chunks = Column(Integer, nullable=False, default=0)
    failed_chunks = Column(Integer, nullable=False, default=0)

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    chunk_size_days = Column(Integer, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow)
    last_batch_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancel_reason = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="backfill_jobs")
    chunks = relationship(
        "BackfillChunk",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="BackfillChunk.chunk_index",
    )

    def __str__(self):
        return f"{self.task_name} ({self.status}) {self.processed_chunks}/{self.total_chunks}"


class BackfillChunk(Base):
    """A bounded date-range unit of backfill work."""
    __tablename__ = "backfill_chunks"
    __table_args__ = (
        UniqueConstraint("job_id", "chunk_index", name="uq_backfill_chunk_job_index"),
        Index("ix_backfill_chunks_status", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(UUID(as_uuid=True), ForeignKey("backfill_jobs.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String, nullable=False, default=BackfillChunkStatusEnum.pending.value)

    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True)

    processed_rows = Column(Integer, default=0)
    inserted_rows = Column(Integer, default=0)
    updated_rows = Column(Integer, default=0)
    skipped_rows = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    job = relationship("BackfillJob", back_populates="chunks")

    def __str__(self):
        return f"Chunk {self.chunk_index} {self.start_date}..{self.end_date} ({self.status})"
