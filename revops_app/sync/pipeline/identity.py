"""
Identity matcher and merger.

Every write into ``CanonicalCustomer``, ``ExternalIdentity`` and
``MergeConflict`` goes through ``IdentityMerger``. A contact is matched by,
in order: its bound external identity, its normalized email, then its E.164
phone. A single match is merged with the precedence profile, no match
creates a customer, and contradictory matches are held as conflicts.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence

from flask import Flask
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from config.precedence import DEFAULT_PROFILE, PrecedenceProfile, load_profile

from revops_app.models import (
    CanonicalCustomer,
    ConflictStatus,
    ConflictType,
    ExternalIdentity,
    MergeConflict,
    db,
    utcnow,
)
from revops_app.sync.contracts import RawContact
from revops_app.sync.errors import MissingExternalIdentifier, summarize_error
from revops_app.sync.metrics import record_merge_action

from .normalize import NormalizedContact, normalize_contact
from .precedence import FieldChange, apply_precedence, seed_customer

logger = logging.getLogger(__name__)

MergeAction = Literal["created", "updated", "conflict", "skipped", "failed"]

MAX_PHONE_CANDIDATES = 5


@dataclass(frozen=True)
class MergeOutcome:
    """Result of merging one contact."""

    source: str
    external_id: str | None
    action: MergeAction
    customer_id: int | None = None
    conflict_id: int | None = None
    conflict_type: str | None = None
    changed_fields: tuple[str, ...] = ()
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.action != "failed"

    def as_response(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "action": self.action}
        if self.customer_id is not None:
            payload["client_id"] = self.customer_id
        if self.conflict_id is not None:
            payload["conflict_id"] = self.conflict_id
            payload["conflict_type"] = self.conflict_type
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class BatchMergeSummary:
    """Counters for a group of merged contacts."""

    created: int = 0
    updated: int = 0
    conflicts: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    outcomes: list[MergeOutcome] = field(default_factory=list)

    def add(self, outcome: MergeOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.action == "created":
            self.created += 1
        elif outcome.action == "updated":
            self.updated += 1
        elif outcome.action == "conflict":
            self.conflicts += 1
        elif outcome.action == "skipped":
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    def as_dict(self) -> dict[str, int | bool]:
        return {
            "created": self.created,
            "updated": self.updated,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class MatchResult:
    """Lookup outcome before anything is written."""

    identity: ExternalIdentity | None
    email_match: CanonicalCustomer | None
    phone_matches: tuple[CanonicalCustomer, ...]


class IdentityMerger:
    """
    Match and merge contacts into canonical customers.

    The merger holds configuration only; every call resolves ``db.session``
    so one instance can be shared by worker threads, each running inside its
    own application context.
    """

    def __init__(
        self,
        *,
        profile: PrecedenceProfile | None = None,
        default_country_code: str = "1",
        sync_run_id: int | None = None,
        dry_run: bool = False,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.profile = profile or DEFAULT_PROFILE
        self.default_country_code = default_country_code
        self.sync_run_id = sync_run_id
        self.dry_run = dry_run
        self._now = now

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "IdentityMerger":
        return cls(
            profile=load_profile(config),
            default_country_code=str(config.get("SYNC_DEFAULT_COUNTRY_CODE") or "1"),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def normalize(self, contact: RawContact) -> NormalizedContact:
        return normalize_contact(contact, default_country_code=self.default_country_code)

    @staticmethod
    def find_identity(source: str, external_id: str) -> ExternalIdentity | None:
        return (
            db.session.query(ExternalIdentity)
            .filter(ExternalIdentity.source == source, ExternalIdentity.external_id == external_id)
            .one_or_none()
        )

    @staticmethod
    def find_by_email(email: str | None) -> CanonicalCustomer | None:
        if not email:
            return None
        return (
            db.session.query(CanonicalCustomer)
            .filter(func.lower(CanonicalCustomer.email) == email.lower())
            .order_by(CanonicalCustomer.id)
            .first()
        )

    @staticmethod
    def find_by_phone(phone_e164: str | None) -> tuple[CanonicalCustomer, ...]:
        if not phone_e164:
            return ()
        return tuple(
            db.session.query(CanonicalCustomer)
            .filter(CanonicalCustomer.phone_e164 == phone_e164)
            .order_by(CanonicalCustomer.id)
            .limit(MAX_PHONE_CANDIDATES)
            .all()
        )

    def match(self, contact: NormalizedContact) -> MatchResult:
        identity = self.find_identity(contact.source, contact.external_id) if contact.external_id else None
        return MatchResult(
            identity=identity,
            email_match=self.find_by_email(contact.email),
            phone_matches=self.find_by_phone(contact.phone_e164),
        )

    # ------------------------------------------------------------------
    # Merge entry points
    # ------------------------------------------------------------------

    def merge(self, contact: RawContact) -> MergeOutcome:
        """Merge one contact, retrying once when a concurrent writer wins a unique key."""

        if not contact.external_id:
            error = MissingExternalIdentifier(contact.source)
            record_merge_action(contact.source, "skipped")
            return MergeOutcome(source=contact.source, external_id=None, action="skipped", error=str(error))

        normalized = self.normalize(contact)
        for attempt in (1, 2):
            try:
                outcome = self._merge_normalized(normalized)
                if not self.dry_run:
                    db.session.commit()
                break
            except IntegrityError as exc:
                db.session.rollback()
                if attempt == 2:
                    logger.warning(
                        "Merge for %s/%s failed after unique-key retry",
                        normalized.source,
                        normalized.external_id,
                        extra={"sync_source": normalized.source, "sync_external_id": normalized.external_id},
                    )
                    outcome = MergeOutcome(
                        source=normalized.source,
                        external_id=normalized.external_id,
                        action="failed",
                        error=summarize_error(exc.orig if exc.orig is not None else exc),
                    )
        record_merge_action(normalized.source, outcome.action)
        return outcome

    def _merge_normalized(self, contact: NormalizedContact) -> MergeOutcome:
        result = self.match(contact)
        identity = result.identity
        email_match = result.email_match
        phone_matches = result.phone_matches

        if identity is not None:
            customer = identity.customer
            if email_match is not None and email_match.id != customer.id:
                return self._hold_conflict(
                    contact,
                    ConflictType.IDENTITY_MISMATCH,
                    candidates=(customer.id, email_match.id),
                    suggested=customer.id,
                )
            return self._update(customer, contact, identity=identity)

        if email_match is not None:
            if len(phone_matches) == 1 and phone_matches[0].id != email_match.id:
                return self._hold_conflict(
                    contact,
                    ConflictType.EMAIL_PHONE_MISMATCH,
                    candidates=(email_match.id, phone_matches[0].id),
                    suggested=email_match.id,
                )
            return self._update(email_match, contact)

        if phone_matches:
            if len(phone_matches) > 1:
                return self._hold_conflict(
                    contact,
                    ConflictType.DUPLICATE_CANDIDATE,
                    candidates=tuple(customer.id for customer in phone_matches),
                    suggested=None,
                )
            return self._update(phone_matches[0], contact)

        if not contact.has_strong_identifier:
            held = self._hold_conflict(contact, ConflictType.WEAK_IDENTIFIER, candidates=(), suggested=None)
            return MergeOutcome(
                source=held.source,
                external_id=held.external_id,
                action="skipped",
                conflict_id=held.conflict_id,
                conflict_type=held.conflict_type,
            )

        return self._create(contact)

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def _create(self, contact: NormalizedContact) -> MergeOutcome:
        if self.dry_run:
            return MergeOutcome(source=contact.source, external_id=contact.external_id, action="created")

        customer = seed_customer(contact)
        customer.last_sync_at = self._now()
        db.session.add(customer)
        db.session.flush()
        self.bind_identity(customer, contact.source, contact.external_id)
        return MergeOutcome(
            source=contact.source,
            external_id=contact.external_id,
            action="created",
            customer_id=customer.id,
            changed_fields=tuple(sorted(customer.field_sources or {})),
        )

    def _update(
        self,
        customer: CanonicalCustomer,
        contact: NormalizedContact,
        *,
        identity: ExternalIdentity | None = None,
    ) -> MergeOutcome:
        if self.dry_run:
            return MergeOutcome(
                source=contact.source,
                external_id=contact.external_id,
                action="updated",
                customer_id=customer.id,
            )

        changes = self.apply(customer, contact)
        if identity is None:
            self.bind_identity(customer, contact.source, contact.external_id)
        else:
            identity.mark_seen(sync_run_id=self.sync_run_id, seen_at=self._now())
        db.session.flush()
        return MergeOutcome(
            source=contact.source,
            external_id=contact.external_id,
            action="updated",
            customer_id=customer.id,
            changed_fields=tuple(change.field_name for change in changes),
        )

    def apply(self, customer: CanonicalCustomer, contact: NormalizedContact) -> list[FieldChange]:
        changes = apply_precedence(customer, contact, self.profile)
        customer.last_sync_at = self._now()
        return changes

    def bind_identity(self, customer: CanonicalCustomer, source: str, external_id: str | None) -> ExternalIdentity | None:
        """Bind (source, external_id) to ``customer``, rebinding an existing row."""

        if not external_id:
            return None
        now = self._now()
        identity = self.find_identity(source, external_id)
        if identity is None:
            identity = ExternalIdentity(
                source=source,
                external_id=external_id,
                customer_id=customer.id,
                first_seen_at=now,
                last_seen_at=now,
                last_sync_run_id=self.sync_run_id,
            )
            db.session.add(identity)
        else:
            identity.customer_id = customer.id
            identity.mark_seen(sync_run_id=self.sync_run_id, seen_at=now)
        return identity

    def _hold_conflict(
        self,
        contact: NormalizedContact,
        conflict_type: ConflictType,
        *,
        candidates: Sequence[int],
        suggested: int | None,
    ) -> MergeOutcome:
        if self.dry_run:
            return MergeOutcome(
                source=contact.source,
                external_id=contact.external_id,
                action="conflict",
                conflict_type=conflict_type.value,
            )

        conflict = (
            db.session.query(MergeConflict)
            .filter(
                MergeConflict.source == contact.source,
                MergeConflict.external_id == contact.external_id,
                MergeConflict.conflict_type == conflict_type,
                MergeConflict.status == ConflictStatus.PENDING,
            )
            .one_or_none()
        )
        if conflict is None:
            conflict = MergeConflict(
                source=contact.source,
                external_id=contact.external_id,
                conflict_type=conflict_type,
                status=ConflictStatus.PENDING,
                occurrences=1,
            )
            db.session.add(conflict)
        else:
            conflict.occurrences = int(conflict.occurrences or 0) + 1

        conflict.email_found = contact.email
        conflict.phone_found = contact.phone_e164
        conflict.candidate_customer_ids = list(candidates)
        conflict.suggested_customer_id = suggested
        conflict.raw_data = dict(contact.raw)
        conflict.sync_run_id = self.sync_run_id
        db.session.flush()

        logger.info(
            "Held %s conflict for %s/%s",
            conflict_type.value,
            contact.source,
            contact.external_id,
            extra={
                "sync_source": contact.source,
                "sync_external_id": contact.external_id,
                "sync_conflict_type": conflict_type.value,
            },
        )
        return MergeOutcome(
            source=contact.source,
            external_id=contact.external_id,
            action="conflict",
            conflict_id=conflict.id,
            conflict_type=conflict_type.value,
        )


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _match_keys(contact: NormalizedContact) -> list[tuple[str, ...]]:
    keys: list[tuple[str, ...]] = []
    if contact.external_id:
        keys.append(("identity", contact.source, contact.external_id))
    if contact.email:
        keys.append(("email", contact.email))
    if contact.phone_e164:
        keys.append(("phone", contact.phone_e164))
    return keys


def group_by_match_key(contacts: Sequence[RawContact], merger: IdentityMerger) -> list[list[RawContact]]:
    """
    Partition contacts so any two sharing an identity, email or phone land in one group.

    Sharing is transitive: ``a`` and ``c`` end up together when each shares a
    key with ``b``. Groups are ordered by their first contact and keep page
    order inside.
    """

    parent = list(range(len(contacts)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    owners: dict[tuple[str, ...], int] = {}
    for index, contact in enumerate(contacts):
        for key in _match_keys(merger.normalize(contact)):
            root, other = find(index), find(owners.setdefault(key, index))
            if root != other:
                parent[max(root, other)] = min(root, other)

    groups: dict[int, list[RawContact]] = {}
    for index, contact in enumerate(contacts):
        groups.setdefault(find(index), []).append(contact)
    return list(groups.values())


def merge_contacts(
    contacts: Sequence[RawContact],
    *,
    merger: IdentityMerger,
    app: Flask | None = None,
    concurrency: int = 1,
    should_cancel: Callable[[], bool] | None = None,
    heartbeat: Callable[[], None] | None = None,
) -> BatchMergeSummary:
    """
    Merge a page of contacts, in parallel sub-batches when ``concurrency`` > 1.

    Contacts are first grouped by shared match keys. A sub-batch holds up to
    ``concurrency`` groups; each group runs on one worker thread, inside its
    own application context and session, merging its contacts in page
    order. Contacts sharing a key are never merged concurrently. Between
    sub-batches the run is checked for cancellation and its heartbeat is
    touched. A concurrency of one merges inline in the caller's session,
    checking between contacts.
    """

    summary = BatchMergeSummary()
    size = max(1, int(concurrency))
    if size > 1 and app is None:
        raise ValueError("merge_contacts needs the Flask app to run parallel sub-batches")

    if size == 1:
        for contact in contacts:
            if should_cancel is not None and should_cancel():
                summary.cancelled = True
                break
            summary.add(_safe_merge(merger, contact))
            if heartbeat is not None:
                heartbeat()
        return summary

    def _merge_group(group: Sequence[RawContact]) -> list[MergeOutcome]:
        with app.app_context():  # type: ignore[union-attr]
            return [_safe_merge(merger, contact) for contact in group]

    groups = group_by_match_key(list(contacts), merger)
    with ThreadPoolExecutor(max_workers=size, thread_name_prefix="sync-merge") as executor:
        for batch in _chunks(groups, size):
            if should_cancel is not None and should_cancel():
                summary.cancelled = True
                break
            results = list(executor.map(_merge_group, batch))
            # Worker sessions committed; reload anything the caller holds.
            db.session.expire_all()
            for outcomes in results:
                for outcome in outcomes:
                    summary.add(outcome)
            if heartbeat is not None:
                heartbeat()
    return summary


def _safe_merge(merger: IdentityMerger, contact: RawContact) -> MergeOutcome:
    try:
        return merger.merge(contact)
    except Exception as exc:
        db.session.rollback()
        logger.exception(
            "Merge failed for %s/%s",
            contact.source,
            contact.external_id,
            extra={"sync_source": contact.source, "sync_external_id": contact.external_id},
        )
        record_merge_action(contact.source, "failed")
        return MergeOutcome(
            source=contact.source,
            external_id=contact.external_id,
            action="failed",
            error=summarize_error(exc),
        )
