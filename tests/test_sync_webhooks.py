import pytest

from revops_app.models import CanonicalCustomer, StagingRecord, StagingStatus, db
from revops_app.sync.pipeline.identity import IdentityMerger
from revops_app.sync.resilience import CircuitBreaker, get_datastore_breaker
from revops_app.sync.resilience.circuit import EXTENSION_KEY as BREAKER_EXTENSION_KEY

GHL_CONTACT = {
    "type": "ContactCreate",
    "id": "g-9",
    "email": "New@Example.com",
    "firstName": "Ana",
    "lastName": "Lopez",
    "tags": ["webinar"],
}


@pytest.fixture
def open_circuit(app, monkeypatch):
    breaker = get_datastore_breaker(app)
    monkeypatch.setattr(breaker, "allow", lambda: False)
    return breaker


def test_ghl_webhook_creates_customer(client):
    response = client.post("/webhooks/ghl", json=GHL_CONTACT)

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is True
    assert payload["action"] == "created"
    assert payload["event"] == "ContactCreate"
    customer = db.session.get(CanonicalCustomer, payload["client_id"])
    assert customer.email == "new@example.com"
    assert customer.full_name == "Ana Lopez"
    assert IdentityMerger.find_identity("ghl", "g-9").customer_id == customer.id
    staged = db.session.query(StagingRecord).one()
    assert staged.processing_status == StagingStatus.MERGED


def test_ghl_webhook_replay_updates(client):
    client.post("/webhooks/ghl", json=GHL_CONTACT)

    replay = client.post("/webhooks/ghl", json={**GHL_CONTACT, "type": "ContactUpdate"}).get_json()

    assert replay["action"] == "updated"
    assert db.session.query(CanonicalCustomer).count() == 1


def test_ghl_webhook_always_acknowledges(client):
    invalid = client.post("/webhooks/ghl", data="{not json", content_type="application/json")
    assert invalid.status_code == 200
    assert invalid.get_json() == {"success": False, "error": "Invalid JSON"}

    missing_id = client.post("/webhooks/ghl", json={"email": "x@example.com"})
    assert missing_id.status_code == 200
    assert missing_id.get_json()["error"] == "Missing contact ID"

    assert db.session.query(StagingRecord).count() == 0


def test_ghl_contact_delete_is_ignored(client, customer_factory):
    customer = customer_factory(email="keep@example.com", identity=("ghl", "g-1"))

    response = client.post("/webhooks/ghl", json={"type": "ContactDelete", "id": "g-1"})

    assert response.get_json()["action"] == "ignored"
    assert db.session.get(CanonicalCustomer, customer.id) is not None
    assert IdentityMerger.find_identity("ghl", "g-1") is not None


def test_webhook_secret_is_checked(app, client, monkeypatch):
    monkeypatch.setitem(app.config, "SYNC_WEBHOOK_SECRET", "s3cret")

    rejected = client.post("/webhooks/ghl", json=GHL_CONTACT)
    assert rejected.status_code == 200
    assert rejected.get_json()["error"] == "Invalid webhook secret."

    generic = client.post("/webhooks/manychat", json={"id": "mc-1", "email": "a@x.com"})
    assert generic.status_code == 401

    accepted = client.post("/webhooks/ghl", json=GHL_CONTACT, headers={"X-Webhook-Secret": "s3cret"})
    assert accepted.get_json()["action"] == "created"


def test_generic_webhook_merges_with_source_parser(client):
    response = client.post(
        "/webhooks/manychat",
        json={"id": "mc-7", "first_name": "Ben", "whatsapp_phone": "5551234567", "optin_whatsapp": True},
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["action"] == "created"
    customer = db.session.get(CanonicalCustomer, payload["client_id"])
    assert customer.phone_e164 == "+15551234567"
    assert customer.wa_opt_in is True


def test_generic_webhook_rejects_unknown_source_and_bad_json(client):
    assert client.post("/webhooks/hubspot", json={"id": "1"}).status_code == 404
    assert client.post("/webhooks/manychat", data="[]", content_type="application/json").status_code == 400


def test_circuit_open_acknowledges_without_writes(client, admin_headers, open_circuit):
    ghl = client.post("/webhooks/ghl", json=GHL_CONTACT)
    rpc = client.post(
        "/sync/identity/merge",
        json={"source": "ghl", "external_id": "g-2", "email": "b@example.com"},
        headers=admin_headers,
    )

    for response in (ghl, rpc):
        assert response.status_code == 200
        assert response.get_json() == {"success": True, "status": "circuit_open"}
    assert db.session.query(StagingRecord).count() == 0
    assert db.session.query(CanonicalCustomer).count() == 0


def test_identity_merge_single_contact(client, admin_headers):
    response = client.post(
        "/sync/identity/merge",
        json={"source": "stripe", "external_id": "cus_1", "email": "pay@example.com", "name": "Payer"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["action"] == "created"
    assert IdentityMerger.find_identity("stripe", "cus_1").customer_id == payload["client_id"]


def test_identity_merge_batch(client, admin_headers):
    contacts = [
        {"source": "ghl", "external_id": "g-1", "email": "ana@example.com"},
        {"source": "manychat", "external_id": "mc-1", "email": "ANA@example.com"},
        {"source": "paypal", "external_id": "pp-1"},
    ]

    response = client.post("/sync/identity/merge", json={"contacts": contacts}, headers=admin_headers)

    assert response.status_code == 200
    payload = response.get_json()
    assert [result["action"] for result in payload["results"]] == ["created", "updated", "skipped"]
    assert payload["summary"]["created"] == 1
    assert payload["summary"]["updated"] == 1
    assert payload["success"] is True
    assert db.session.query(CanonicalCustomer).count() == 1


def test_identity_merge_requires_operator(client):
    response = client.post("/sync/identity/merge", json={"source": "ghl", "external_id": "g-1"})

    assert response.status_code == 401


@pytest.mark.parametrize(
    "body, message",
    [
        ({"external_id": "x", "email": "a@x.com"}, "contacts[0] requires a source"),
        ({"contacts": []}, "contacts must be a non-empty list"),
        ({"contacts": [{"source": "ghl", "external_id": str(i)} for i in range(501)]}, "At most 500"),
    ],
)
def test_identity_merge_validation(client, admin_headers, body, message):
    response = client.post("/sync/identity/merge", json=body, headers=admin_headers)

    assert response.status_code == 400
    assert message in response.get_json()["error"]


def test_slow_datastore_acknowledges_webhook_without_writes(app, client, stalled_datastore):
    app.extensions[BREAKER_EXTENSION_KEY] = CircuitBreaker(stalled_datastore, reset_seconds=30)

    response = client.post("/webhooks/ghl", json=GHL_CONTACT)

    assert response.status_code == 200
    assert response.get_json() == {"success": True, "status": "circuit_open"}
    assert db.session.query(CanonicalCustomer).count() == 0
    assert db.session.query(StagingRecord).count() == 0
