import pytest

from revops_app.models import (
    CanonicalCustomer,
    ConflictStatus,
    ConflictType,
    ExternalIdentity,
    MergeConflict,
    db,
)
from revops_app.sync.contracts import RawContact
from revops_app.sync.pipeline.identity import IdentityMerger, group_by_match_key, merge_contacts


@pytest.fixture
def merger(app):
    return IdentityMerger.from_config(app.config)


def _contact(source="ghl", external_id="ext-1", **fields):
    return RawContact(source=source, external_id=external_id, **fields)


def test_creates_customer_and_binds_identity(merger):
    outcome = merger.merge(_contact(email="New@Example.com", phone="(555) 123-4567", full_name="New Lead"))

    assert outcome.action == "created"
    customer = db.session.get(CanonicalCustomer, outcome.customer_id)
    assert customer.email == "new@example.com"
    assert customer.phone_e164 == "+15551234567"
    assert customer.lifecycle_stage == "LEAD"
    assert customer.acquisition_source == "ghl"
    identity = IdentityMerger.find_identity("ghl", "ext-1")
    assert identity.customer_id == customer.id
    assert outcome.as_response() == {"success": True, "action": "created", "client_id": customer.id}


def test_replaying_the_same_contact_updates_without_duplicates(merger):
    contact = _contact(email="a@x.com", tags=("vip",))
    first = merger.merge(contact)
    second = merger.merge(contact)

    assert first.action == "created"
    assert second.action == "updated"
    assert second.customer_id == first.customer_id
    assert second.changed_fields == ()
    assert db.session.query(CanonicalCustomer).count() == 1
    assert db.session.query(ExternalIdentity).count() == 1


def test_email_match_binds_new_source_identity(merger, customer_factory):
    existing = customer_factory(email="shared@example.com", full_name="Al", identity=("stripe", "cus_1"))

    outcome = merger.merge(_contact(source="ghl", external_id="g-9", email="SHARED@example.com", full_name="Al Smith"))

    assert outcome.action == "updated"
    assert outcome.customer_id == existing.id
    assert "full_name" in outcome.changed_fields
    assert IdentityMerger.find_identity("ghl", "g-9").customer_id == existing.id
    db.session.refresh(existing)
    assert existing.full_name == "Al Smith"
    assert existing.field_sources["full_name"] == "ghl"


def test_phone_only_match_updates_single_candidate(merger, customer_factory):
    existing = customer_factory(phone_e164="+15551234567")

    outcome = merger.merge(_contact(source="manychat", external_id="mc-1", phone="555-123-4567", wa_opt_in=True))

    assert outcome.action == "updated"
    assert outcome.customer_id == existing.id
    db.session.refresh(existing)
    assert existing.wa_opt_in is True


def test_email_and_phone_pointing_at_different_customers_is_a_conflict(merger, customer_factory):
    by_email = customer_factory(email="one@example.com")
    by_phone = customer_factory(email="two@example.com", phone_e164="+15551234567")

    outcome = merger.merge(_contact(email="one@example.com", phone="+1 555 123 4567"))

    assert outcome.action == "conflict"
    assert outcome.conflict_type == ConflictType.EMAIL_PHONE_MISMATCH.value
    conflict = db.session.get(MergeConflict, outcome.conflict_id)
    assert conflict.status == ConflictStatus.PENDING
    assert conflict.candidate_customer_ids == [by_email.id, by_phone.id]
    assert conflict.suggested_customer_id == by_email.id
    assert conflict.email_found == "one@example.com"
    assert IdentityMerger.find_identity("ghl", "ext-1") is None


def test_several_phone_matches_raise_duplicate_candidate(merger, customer_factory):
    first = customer_factory(email="a@example.com", phone_e164="+15551234567")
    second = customer_factory(email="b@example.com", phone_e164="+15551234567")

    outcome = merger.merge(_contact(phone="5551234567"))

    assert outcome.action == "conflict"
    assert outcome.conflict_type == ConflictType.DUPLICATE_CANDIDATE.value
    conflict = db.session.get(MergeConflict, outcome.conflict_id)
    assert conflict.candidate_customer_ids == [first.id, second.id]
    assert conflict.suggested_customer_id is None


def test_bound_identity_with_email_owned_elsewhere_is_identity_mismatch(merger, customer_factory):
    bound = customer_factory(email="bound@example.com", identity=("ghl", "ext-1"))
    other = customer_factory(email="other@example.com")

    outcome = merger.merge(_contact(email="other@example.com"))

    assert outcome.conflict_type == ConflictType.IDENTITY_MISMATCH.value
    conflict = db.session.get(MergeConflict, outcome.conflict_id)
    assert conflict.candidate_customer_ids == [bound.id, other.id]
    assert conflict.suggested_customer_id == bound.id


def test_repeated_conflict_increments_occurrences(merger, customer_factory):
    customer_factory(email="one@example.com")
    customer_factory(email="two@example.com", phone_e164="+15551234567")
    contact = _contact(email="one@example.com", phone="5551234567")

    first = merger.merge(contact)
    second = merger.merge(contact)

    assert first.conflict_id == second.conflict_id
    assert db.session.get(MergeConflict, first.conflict_id).occurrences == 2


def test_contact_without_email_or_phone_is_skipped_and_held(merger):
    outcome = merger.merge(_contact(source="manychat", external_id="mc-7", full_name="Nameless"))

    assert outcome.action == "skipped"
    assert outcome.conflict_type == ConflictType.WEAK_IDENTIFIER.value
    assert outcome.conflict_id is not None
    assert db.session.query(CanonicalCustomer).count() == 0
    conflict = db.session.get(MergeConflict, outcome.conflict_id)
    assert conflict.raw_data["full_name"] == "Nameless"


def test_missing_external_id_is_skipped_without_writes(merger):
    outcome = merger.merge(_contact(external_id=None, email="a@x.com"))

    assert outcome.action == "skipped"
    assert "external_id" in outcome.error
    assert db.session.query(CanonicalCustomer).count() == 0


def test_precedence_rules_apply_on_update(merger, customer_factory):
    existing = customer_factory(
        email="p@example.com",
        full_name="Pat",
        tags=["lead"],
        sms_opt_in=True,
        identity=("ghl", "ext-1"),
    )

    merger.merge(
        _contact(
            source="stripe",
            external_id="cus_9",
            email="p@example.com",
            phone="555 000 1111",
            full_name="Patricia Longname",
            tags=("customer",),
            sms_opt_in=False,
        )
    )
    merger.merge(_contact(email="p@example.com", sms_opt_in=True, tags=("vip",)))

    db.session.refresh(existing)
    assert existing.phone_e164 == "+15550001111"
    assert existing.full_name == "Pat"
    assert existing.tags == ["lead", "customer", "vip"]
    assert existing.sms_opt_in is False


def test_dry_run_reports_without_writing(app):
    merger = IdentityMerger.from_config(app.config, dry_run=True)

    outcome = merger.merge(_contact(email="dry@example.com"))

    assert outcome.action == "created"
    assert outcome.customer_id is None
    assert db.session.query(CanonicalCustomer).count() == 0
    assert db.session.query(ExternalIdentity).count() == 0


def test_merge_contacts_summarizes_batch(merger, customer_factory):
    customer_factory(email="known@example.com")
    contacts = [
        _contact(external_id="1", email="known@example.com"),
        _contact(external_id="2", email="fresh@example.com"),
        _contact(external_id="3", full_name="No identifiers"),
        _contact(external_id=None, email="x@example.com"),
    ]
    beats = []

    summary = merge_contacts(contacts, merger=merger, heartbeat=lambda: beats.append(1))

    assert summary.as_dict() == {
        "created": 1,
        "updated": 1,
        "conflicts": 0,
        "skipped": 2,
        "failed": 0,
        "cancelled": False,
    }
    assert summary.processed == 4
    assert len(beats) == 4


def test_merge_contacts_stops_when_cancelled(merger):
    contacts = [_contact(external_id=str(index), email=f"c{index}@example.com") for index in range(3)]
    checks = iter([False, True, True])

    summary = merge_contacts(contacts, merger=merger, should_cancel=lambda: next(checks))

    assert summary.cancelled is True
    assert summary.created == 1
    assert db.session.query(CanonicalCustomer).count() == 1


def test_merge_contacts_in_parallel_sub_batches(app, merger):
    contacts = [_contact(external_id=str(index), email=f"p{index}@example.com") for index in range(6)]

    summary = merge_contacts(contacts, merger=merger, app=app, concurrency=3)

    assert summary.created == 6
    assert db.session.query(CanonicalCustomer).count() == 6


def test_contacts_sharing_a_phone_merge_into_one_customer_in_parallel(app, merger):
    contacts = [_contact(source="manychat", external_id=f"mc-{index}", phone="+1 555 123 4567") for index in range(4)]

    summary = merge_contacts(contacts, merger=merger, app=app, concurrency=4)

    assert (summary.created, summary.updated, summary.failed) == (1, 3, 0)
    assert db.session.query(CanonicalCustomer).count() == 1
    customer = db.session.query(CanonicalCustomer).one()
    assert {identity.external_id for identity in customer.identities} == {"mc-0", "mc-1", "mc-2", "mc-3"}


def test_overlapping_identifiers_are_grouped_transitively(app, merger):
    contacts = [
        _contact(external_id="1", email="pat@example.com"),
        _contact(external_id="2", email="other@example.com"),
        _contact(external_id="3", email="PAT@example.com", phone="555-987-6543"),
        _contact(source="stripe", external_id="cus_1", phone="+15559876543"),
        _contact(external_id="1", full_name="Pat Again"),
    ]

    groups = group_by_match_key(contacts, merger)

    assert [[contact.external_id for contact in group] for group in groups] == [["1", "3", "cus_1", "1"], ["2"]]

    summary = merge_contacts(contacts, merger=merger, app=app, concurrency=4)

    assert (summary.created, summary.updated, summary.conflicts) == (2, 3, 0)
    assert db.session.query(CanonicalCustomer).count() == 2
    pat = IdentityMerger.find_identity("stripe", "cus_1").customer
    assert pat.email == "pat@example.com"
    assert pat.phone_e164 == "+15559876543"
    assert IdentityMerger.find_identity("ghl", "3").customer_id == pat.id


def test_merge_contacts_requires_app_for_parallel_runs(merger):
    with pytest.raises(ValueError):
        merge_contacts([_contact(email="a@x.com")], merger=merger, concurrency=2)


def test_merge_failure_is_reported_per_contact(merger, monkeypatch):
    def explode(contact):
        raise RuntimeError("database went away")

    monkeypatch.setattr(merger, "_merge_normalized", explode)

    summary = merge_contacts([_contact(email="a@x.com")], merger=merger)

    assert summary.failed == 1
    assert summary.outcomes[0].error == "database went away"
    assert summary.outcomes[0].as_response()["success"] is False
