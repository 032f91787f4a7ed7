"""Write-ahead staging of raw contact payloads."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import IO, Iterable, Mapping, Sequence

from sqlalchemy import func

from revops_app.models import StagingRecord, StagingStatus, db, utcnow
from revops_app.sync.adapters import ContactCSVAdapter, ContactCSVStatistics, payload_for_staging
from revops_app.sync.contracts import RawContact

from .identity import MergeOutcome

BATCH_SIZE = 500

_STATUS_BY_ACTION = {
    "created": StagingStatus.MERGED,
    "updated": StagingStatus.MERGED,
    "conflict": StagingStatus.CONFLICT,
    "skipped": StagingStatus.SKIPPED,
    "failed": StagingStatus.FAILED,
}


def compute_checksum(payload: Mapping[str, object]) -> str:
    """Return a stable checksum for a payload to support idempotency."""

    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def dedupe_contacts(contacts: Iterable[RawContact]) -> list[RawContact]:
    """Keep the last record per (source, external_id); records without an id pass through."""

    keyed: dict[tuple[str, str], RawContact] = {}
    order: list[tuple[str, str] | int] = []
    passthrough: dict[int, RawContact] = {}
    for index, contact in enumerate(contacts):
        if not contact.external_id:
            passthrough[index] = contact
            order.append(index)
            continue
        key = (contact.source, contact.external_id)
        if key not in keyed:
            order.append(key)
        keyed[key] = contact
    return [passthrough[item] if isinstance(item, int) else keyed[item] for item in order]


@dataclass
class StagingSummary:
    """Outcome statistics for a staging operation."""

    inserted: int = 0
    reopened: int = 0
    unchanged: int = 0
    missing_external_id: int = 0
    record_ids: dict[str, int] = field(default_factory=dict)

    @property
    def staged(self) -> int:
        return self.inserted + self.reopened + self.unchanged


def stage_contacts(
    contacts: Sequence[RawContact],
    *,
    sync_run_id: int | None = None,
    now: datetime | None = None,
) -> StagingSummary:
    """
    Upsert contacts into ``staging_records`` keyed by (source, external_id).

    A row whose checksum changed is re-opened for merging; an identical
    payload only refreshes its fetch timestamp and run link.
    """

    summary = StagingSummary()
    fetched_at = now or utcnow()
    by_source: dict[str, list[RawContact]] = {}
    for contact in contacts:
        if not contact.external_id:
            summary.missing_external_id += 1
            continue
        by_source.setdefault(contact.source, []).append(contact)

    for source, group in by_source.items():
        for start in range(0, len(group), BATCH_SIZE):
            chunk = group[start : start + BATCH_SIZE]
            existing = {
                row.external_id: row
                for row in db.session.query(StagingRecord)
                .filter(
                    StagingRecord.source == source,
                    StagingRecord.external_id.in_([contact.external_id for contact in chunk]),
                )
                .all()
            }
            for contact in chunk:
                payload = payload_for_staging(contact)
                checksum = compute_checksum(payload)
                row = existing.get(contact.external_id)
                if row is None:
                    row = StagingRecord(
                        source=source,
                        external_id=contact.external_id,
                        payload_json=payload,
                        checksum=checksum,
                        fetched_at=fetched_at,
                        processing_status=StagingStatus.PENDING,
                        sync_run_id=sync_run_id,
                    )
                    db.session.add(row)
                    existing[contact.external_id] = row
                    summary.inserted += 1
                elif row.checksum != checksum:
                    row.payload_json = payload
                    row.checksum = checksum
                    row.fetched_at = fetched_at
                    row.processed_at = None
                    row.processing_status = StagingStatus.PENDING
                    row.merge_action = None
                    row.error = None
                    row.sync_run_id = sync_run_id
                    summary.reopened += 1
                else:
                    row.fetched_at = fetched_at
                    if sync_run_id is not None:
                        row.sync_run_id = sync_run_id
                    summary.unchanged += 1
            db.session.flush()
            for contact in chunk:
                summary.record_ids[f"{source}:{contact.external_id}"] = existing[contact.external_id].id

    db.session.commit()
    return summary


def mark_processed(outcomes: Iterable[MergeOutcome], *, now: datetime | None = None) -> int:
    """Record merge outcomes on their staging rows; failed rows stay open for the drain."""

    processed_at = now or utcnow()
    updated = 0
    for outcome in outcomes:
        if not outcome.external_id:
            continue
        row = (
            db.session.query(StagingRecord)
            .filter(StagingRecord.source == outcome.source, StagingRecord.external_id == outcome.external_id)
            .one_or_none()
        )
        if row is None:
            continue
        row.processing_status = _STATUS_BY_ACTION.get(outcome.action, StagingStatus.FAILED)
        row.merge_action = outcome.action
        row.error = outcome.error
        row.processed_at = None if outcome.action == "failed" else processed_at
        updated += 1
    db.session.commit()
    return updated


def pending_count(source: str | None = None) -> int:
    query = db.session.query(func.count(StagingRecord.id)).filter(StagingRecord.processed_at.is_(None))
    if source:
        query = query.filter(StagingRecord.source == source)
    return int(query.scalar() or 0)


def status_counts(source: str | None = None) -> dict[str, int]:
    query = db.session.query(StagingRecord.processing_status, func.count(StagingRecord.id))
    if source:
        query = query.filter(StagingRecord.source == source)
    rows = query.group_by(StagingRecord.processing_status).all()
    return {status.value: int(count) for status, count in rows}


def purge_processed(*, retention_days: int, now: datetime | None = None, dry_run: bool = False) -> int:
    """Delete processed staging rows older than the retention window."""

    cutoff = (now or utcnow()) - timedelta(days=max(1, int(retention_days)))
    query = db.session.query(StagingRecord).filter(
        StagingRecord.processed_at.is_not(None),
        StagingRecord.processed_at < cutoff,
    )
    if dry_run:
        return query.count()
    deleted = query.delete(synchronize_session=False)
    db.session.commit()
    return int(deleted or 0)


@dataclass
class CSVImportSummary:
    staging: StagingSummary
    statistics: ContactCSVStatistics

    def as_dict(self) -> dict[str, object]:
        return {
            "rows_processed": self.statistics.rows_processed,
            "rows_skipped_blank": self.statistics.rows_skipped_blank,
            "rows_rejected": self.statistics.rows_rejected,
            "rows_staged": self.staging.staged,
            "rows_inserted": self.staging.inserted,
            "rows_reopened": self.staging.reopened,
            "rows_unchanged": self.staging.unchanged,
            "errors": list(self.statistics.errors),
        }


def stage_csv(file_obj: IO[str], *, source: str = "csv", sync_run_id: int | None = None) -> CSVImportSummary:
    """
    Stage every valid row of a contact CSV for the drain run.

    Raises:
        CSVHeaderError: When the header has no identifier column or repeats one.
    """

    adapter = ContactCSVAdapter(file_obj, source=source)
    contacts = dedupe_contacts(row.contact for row in adapter.iter_contacts())
    summary = stage_contacts(contacts, sync_run_id=sync_run_id)
    return CSVImportSummary(staging=summary, statistics=adapter.statistics)
