# revops_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, as_utc, db, utcnow
from .sync import (
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
    "db",
    "BaseModel",
    "utcnow",
    "as_utc",
    # Sync models
    "SyncRun",
    "SyncRunStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "StagingRecord",
    "StagingStatus",
    # Identity models
    "CanonicalCustomer",
    "CustomerStatus",
    "ExternalIdentity",
    "MergeConflict",
    "ConflictType",
    "ConflictStatus",
    "ConflictResolution",
]
