"""
SQLAlchemy models for the sync and identity unification schema.

``SyncRun`` is owned by the run controller, ``StagingRecord`` by the staging
store, and the canonical tables (``CanonicalCustomer``, ``ExternalIdentity``,
``MergeConflict``) are only written through the identity merger.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, as_utc, db, utcnow


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    PENDING = "pending"
    RUNNING = "running"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES: tuple[SyncRunStatus, ...] = (
    SyncRunStatus.PENDING,
    SyncRunStatus.RUNNING,
    SyncRunStatus.CONTINUING,
)
TERMINAL_STATUSES: tuple[SyncRunStatus, ...] = (
    SyncRunStatus.COMPLETED,
    SyncRunStatus.FAILED,
    SyncRunStatus.CANCELLED,
)

# Enum columns persist member names.
_ACTIVE_STATUS_SQL = text("status IN ('PENDING', 'RUNNING', 'CONTINUING')")


class SyncRun(BaseModel):
    """One execution lineage of a paginated sync for a single source."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.PENDING,
        index=True,
    )
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_activity_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), index=True)
    checkpoint: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    total_fetched: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_inserted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_conflicts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    pages_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    staging_records = relationship("StagingRecord", back_populates="sync_run", passive_deletes=True)

    __table_args__ = (
        Index(
            "uq_sync_runs_active_source",
            "source",
            unique=True,
            sqlite_where=_ACTIVE_STATUS_SQL,
            postgresql_where=_ACTIVE_STATUS_SQL,
        ),
        Index("idx_sync_runs_source_started", "source", "started_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def total_upserted(self) -> int:
        return int(self.total_inserted or 0) + int(self.total_updated or 0)

    @property
    def last_activity(self) -> datetime | None:
        return as_utc(self.last_activity_at or self.started_at)

    def totals(self) -> dict[str, int]:
        return {
            "fetched": int(self.total_fetched or 0),
            "inserted": int(self.total_inserted or 0),
            "updated": int(self.total_updated or 0),
            "skipped": int(self.total_skipped or 0),
            "conflicts": int(self.total_conflicts or 0),
        }

    def __repr__(self) -> str:
        return f"<SyncRun id={self.id} source={self.source} status={self.status}>"


class StagingStatus(str, enum.Enum):
    """Processing state of a landed raw payload."""

    PENDING = "pending"
    MERGED = "merged"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
    FAILED = "failed"


class StagingRecord(BaseModel):
    """Raw payload for one external contact awaiting (or done with) merge."""

    __tablename__ = "staging_records"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    sync_run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    payload_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    checksum: Mapped[str] = mapped_column(db.String(64), nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    processing_status: Mapped[StagingStatus] = mapped_column(
        Enum(StagingStatus, name="staging_status_enum"),
        nullable=False,
        default=StagingStatus.PENDING,
        index=True,
    )
    merge_action: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    error: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    sync_run = relationship("SyncRun", back_populates="staging_records")

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_staging_records_source_external"),
        Index("idx_staging_records_drain", "source", "processed_at", "fetched_at", "id"),
    )


class CustomerStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class CanonicalCustomer(BaseModel):
    """Merged, deduplicated customer identity."""

    __tablename__ = "canonical_customers"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, unique=True)
    phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True, index=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    tags: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    wa_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    sms_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    email_opt_in: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    lifecycle_stage: Mapped[str] = mapped_column(db.String(30), nullable=False, default="LEAD")
    status: Mapped[CustomerStatus] = mapped_column(
        Enum(CustomerStatus, name="customer_status_enum"),
        nullable=False,
        default=CustomerStatus.ACTIVE,
        index=True,
    )
    acquisition_source: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    tracking_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    field_sources: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    identities = relationship("ExternalIdentity", back_populates="customer", lazy="selectin")

    def snapshot(self) -> dict[str, object]:
        """Return the mergeable fields as a plain mapping."""
        return {
            "email": self.email,
            "phone_e164": self.phone_e164,
            "full_name": self.full_name,
            "tags": list(self.tags or []),
            "wa_opt_in": self.wa_opt_in,
            "sms_opt_in": self.sms_opt_in,
            "email_opt_in": self.email_opt_in,
            "lifecycle_stage": self.lifecycle_stage,
            "tracking_data": dict(self.tracking_data or {}),
        }

    def __repr__(self) -> str:
        return f"<CanonicalCustomer id={self.id} email={self.email}>"


class ExternalIdentity(BaseModel):
    """Binding of a (source, external id) pair to one canonical customer."""

    __tablename__ = "external_identities"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("canonical_customers.id"),
        nullable=False,
        index=True,
    )
    first_seen_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_sync_run_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    customer = relationship("CanonicalCustomer", back_populates="identities")

    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_external_identities_source_external"),)

    def mark_seen(self, *, sync_run_id: int | None = None, seen_at: datetime | None = None) -> None:
        self.last_seen_at = seen_at or utcnow()
        if sync_run_id is not None:
            self.last_sync_run_id = sync_run_id


class ConflictType(str, enum.Enum):
    IDENTITY_MISMATCH = "identity_mismatch"
    EMAIL_PHONE_MISMATCH = "email_phone_mismatch"
    DUPLICATE_CANDIDATE = "duplicate_candidate"
    WEAK_IDENTIFIER = "weak_identifier"


class ConflictStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ConflictResolution(str, enum.Enum):
    CREATE_NEW = "create_new"
    LINK_EXISTING = "link_existing"
    IGNORE = "ignore"


class MergeConflict(BaseModel):
    """Ambiguous merge held for operator review."""

    __tablename__ = "merge_conflicts"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    conflict_type: Mapped[ConflictType] = mapped_column(
        Enum(ConflictType, name="merge_conflict_type_enum"),
        nullable=False,
        index=True,
    )
    status: Mapped[ConflictStatus] = mapped_column(
        Enum(ConflictStatus, name="merge_conflict_status_enum"),
        nullable=False,
        default=ConflictStatus.PENDING,
        index=True,
    )
    email_found: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone_found: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    candidate_customer_ids: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    suggested_customer_id: Mapped[int | None] = mapped_column(
        ForeignKey("canonical_customers.id"),
        nullable=True,
    )
    raw_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    resolution: Mapped[ConflictResolution | None] = mapped_column(
        Enum(ConflictResolution, name="merge_conflict_resolution_enum"),
        nullable=True,
    )
    resolved_customer_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    sync_run_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True, index=True)
    occurrences: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)

    __table_args__ = (
        Index(
            "uq_merge_conflicts_pending",
            "source",
            "external_id",
            "conflict_type",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        Index("idx_merge_conflicts_source_status", "source", "status"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == ConflictStatus.PENDING
