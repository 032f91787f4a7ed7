"""Sync pipeline: normalization, identity merge, staging and run control."""

from __future__ import annotations

from .checkpoint import Checkpoint, CheckpointStore
from .conflicts import ConflictFilters, ConflictListResult, ConflictQueueService, serialize_conflict
from .controller import PageResult, StartResult, SyncRunController
from .identity import BatchMergeSummary, IdentityMerger, MatchResult, MergeOutcome, merge_contacts
from .normalize import NormalizedContact, normalize_contact, normalize_email, normalize_phone
from .paginator import ResumablePaginator
from .precedence import FieldChange, apply_precedence, resolve_value, seed_customer
from .run_service import RunFilters, RunListResult, RunStats, SyncRunService, serialize_run, serialize_stats
from .runner import JobResult, RunRequest, SyncJobRunner
from .staging import (
    CSVImportSummary,
    StagingSummary,
    compute_checksum,
    dedupe_contacts,
    mark_processed,
    pending_count,
    purge_processed,
    stage_contacts,
    stage_csv,
    status_counts,
)

__all__ = [
    "BatchMergeSummary",
    "CSVImportSummary",
    "Checkpoint",
    "CheckpointStore",
    "ConflictFilters",
    "ConflictListResult",
    "ConflictQueueService",
    "FieldChange",
    "IdentityMerger",
    "JobResult",
    "MatchResult",
    "MergeOutcome",
    "NormalizedContact",
    "PageResult",
    "ResumablePaginator",
    "RunFilters",
    "RunListResult",
    "RunRequest",
    "RunStats",
    "StagingSummary",
    "StartResult",
    "SyncJobRunner",
    "SyncRunController",
    "SyncRunService",
    "apply_precedence",
    "compute_checksum",
    "dedupe_contacts",
    "mark_processed",
    "merge_contacts",
    "normalize_contact",
    "normalize_email",
    "normalize_phone",
    "pending_count",
    "purge_processed",
    "resolve_value",
    "seed_customer",
    "serialize_conflict",
    "serialize_run",
    "serialize_stats",
    "stage_contacts",
    "stage_csv",
    "status_counts",
]
