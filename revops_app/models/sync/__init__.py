"""
Sync and identity models package.
"""

from .schema import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    CanonicalCustomer,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    CustomerStatus,
    ExternalIdentity,
    MergeConflict,
    StagingRecord,
    StagingStatus,
    SyncRun,
    SyncRunStatus,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "CanonicalCustomer",
    "ConflictResolution",
    "ConflictStatus",
    "ConflictType",
    "CustomerStatus",
    "ExternalIdentity",
    "MergeConflict",
    "StagingRecord",
    "StagingStatus",
    "SyncRun",
    "SyncRunStatus",
]
