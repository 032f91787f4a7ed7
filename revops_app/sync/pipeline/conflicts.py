"""
Conflict queue: listing held merges and applying operator resolutions.

Resolutions write through ``IdentityMerger`` so canonical tables keep a
single write path.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from revops_app.models import (
    CanonicalCustomer,
    ConflictResolution,
    ConflictStatus,
    ConflictType,
    MergeConflict,
    db,
    utcnow,
)
from revops_app.sync.contracts import RawContact

from .filters import (
    DEFAULT_PAGE_SIZE,
    Page,
    enum_member,
    enum_members,
    isoformat,
    page_window,
    positive_int,
    source_names,
)
from .identity import IdentityMerger
from .precedence import seed_customer

ConflictListResult = Page[MergeConflict]


@dataclass(frozen=True)
class ConflictFilters:
    """Filter options for the conflict queue."""

    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    statuses: tuple[ConflictStatus, ...] = ()
    sources: tuple[str, ...] = ()
    conflict_types: tuple[ConflictType, ...] = ()
    sync_run_id: int | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        statuses: Iterable[str] | None = None,
        sources: Iterable[str] | None = None,
        conflict_types: Iterable[str] | None = None,
        sync_run_id: int | str | None = None,
    ) -> "ConflictFilters":
        page_number, size = page_window(page, page_size)
        run_id = None
        if sync_run_id not in (None, ""):
            run_id = positive_int(sync_run_id, default=1, label="sync_run_id")
        return cls(
            page=page_number,
            page_size=size,
            statuses=enum_members(ConflictStatus, statuses, "status"),
            sources=source_names(sources),
            conflict_types=enum_members(ConflictType, conflict_types, "conflict type"),
            sync_run_id=run_id,
        )


class ConflictQueueService:
    """Facade over ``MergeConflict`` for the operator API and CLI."""

    def __init__(self, session: Session | None = None, merger: IdentityMerger | None = None) -> None:
        self.session: Session = session or db.session
        self.merger = merger or IdentityMerger()

    def list_conflicts(self, filters: ConflictFilters) -> ConflictListResult:
        query = self.session.query(MergeConflict)
        if filters.statuses:
            query = query.filter(MergeConflict.status.in_(filters.statuses))
        if filters.sources:
            query = query.filter(MergeConflict.source.in_(filters.sources))
        if filters.conflict_types:
            query = query.filter(MergeConflict.conflict_type.in_(filters.conflict_types))
        if filters.sync_run_id is not None:
            query = query.filter(MergeConflict.sync_run_id == filters.sync_run_id)

        total = query.count()
        items = (
            query.order_by(MergeConflict.created_at.desc(), MergeConflict.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        return Page(items=items, total=total, page=filters.page, page_size=filters.page_size)

    def get_conflict(self, conflict_id: int) -> MergeConflict:
        conflict = self.session.get(MergeConflict, conflict_id)
        if conflict is None:
            raise NoResultFound(f"Merge conflict {conflict_id} not found.")
        return conflict

    def pending_counts(self) -> dict[str, int]:
        rows = (
            self.session.query(MergeConflict.conflict_type, func.count(MergeConflict.id))
            .filter(MergeConflict.status == ConflictStatus.PENDING)
            .group_by(MergeConflict.conflict_type)
            .all()
        )
        return {conflict_type.value: int(count) for conflict_type, count in rows}

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        conflict_id: int,
        resolution: str | ConflictResolution,
        *,
        customer_id: int | None = None,
        operator: str | None = None,
        notes: str | None = None,
    ) -> MergeConflict:
        """
        Apply an operator decision to a pending conflict.

        Raises:
            NoResultFound: If the conflict does not exist.
            ValueError: If the conflict is closed or the decision cannot apply.
        """

        choice = enum_member(ConflictResolution, resolution, "resolution")
        conflict = self.get_conflict(conflict_id)
        if not conflict.is_pending:
            raise ValueError(f"Merge conflict {conflict_id} is already {conflict.status.value}.")

        contact = self.merger.normalize(RawContact.from_mapping(conflict.source, conflict.raw_data or {}))
        if not contact.external_id:
            contact = dataclasses.replace(contact, external_id=conflict.external_id)

        if choice == ConflictResolution.IGNORE:
            conflict.status = ConflictStatus.IGNORED
        elif choice == ConflictResolution.CREATE_NEW:
            identity = self.merger.find_identity(conflict.source, conflict.external_id)
            if identity is not None:
                raise ValueError(
                    f"Identity {conflict.source}/{conflict.external_id} is already bound to customer "
                    f"{identity.customer_id}; use link_existing instead."
                )
            contact = self._without_taken_email(contact, owner_id=None)
            customer = seed_customer(contact)
            customer.last_sync_at = utcnow()
            self.session.add(customer)
            self.session.flush()
            self.merger.bind_identity(customer, conflict.source, conflict.external_id)
            conflict.resolved_customer_id = customer.id
            conflict.status = ConflictStatus.RESOLVED
        else:
            target_id = customer_id or conflict.suggested_customer_id
            if target_id is None:
                raise ValueError("link_existing requires customer_id.")
            customer = self.session.get(CanonicalCustomer, int(target_id))
            if customer is None:
                raise ValueError(f"Customer {target_id} not found.")
            contact = self._without_taken_email(contact, owner_id=customer.id)
            self.merger.apply(customer, contact)
            self.merger.bind_identity(customer, conflict.source, conflict.external_id)
            conflict.resolved_customer_id = customer.id
            conflict.status = ConflictStatus.RESOLVED

        conflict.resolution = choice
        conflict.resolved_at = utcnow()
        conflict.resolved_by = operator
        conflict.resolution_notes = notes
        self.session.commit()
        return conflict

    def _without_taken_email(self, contact, *, owner_id: int | None):
        # The email column is unique; never copy an address another customer owns.
        if not contact.email:
            return contact
        owner = self.merger.find_by_email(contact.email)
        if owner is None or owner.id == owner_id:
            return contact
        return dataclasses.replace(contact, email=None)


def serialize_conflict(conflict: MergeConflict, *, include_raw: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": conflict.id,
        "source": conflict.source,
        "external_id": conflict.external_id,
        "conflict_type": conflict.conflict_type.value,
        "status": conflict.status.value,
        "email_found": conflict.email_found,
        "phone_found": conflict.phone_found,
        "candidate_customer_ids": list(conflict.candidate_customer_ids or []),
        "suggested_customer_id": conflict.suggested_customer_id,
        "resolution": conflict.resolution.value if conflict.resolution else None,
        "resolved_customer_id": conflict.resolved_customer_id,
        "resolved_by": conflict.resolved_by,
        "resolved_at": isoformat(conflict.resolved_at),
        "resolution_notes": conflict.resolution_notes,
        "sync_run_id": conflict.sync_run_id,
        "occurrences": conflict.occurrences,
        "created_at": isoformat(conflict.created_at),
    }
    if include_raw:
        payload["raw_data"] = dict(conflict.raw_data or {})
    return payload


__all__ = [
    "ConflictFilters",
    "ConflictListResult",
    "ConflictQueueService",
    "serialize_conflict",
]
