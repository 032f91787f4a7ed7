import json
from datetime import datetime, timedelta, timezone

import pytest
import requests

from revops_app.sync.adapters import (
    ApiClient,
    GHLAdapter,
    ManyChatAdapter,
    PayPalAdapter,
    StagedRecordsAdapter,
    StripeAdapter,
    build_adapter,
)
from revops_app.sync.adapters.paypal import clamp_window, map_paypal_status
from revops_app.sync.errors import AdapterConfigError, PlatformRejectedError
from revops_app.sync.resilience import RetryExhaustedError, RetryPolicy


def make_response(status_code=200, payload=None, *, text=None, headers=None):
    response = requests.Response()
    response.status_code = status_code
    body = text if text is not None else json.dumps(payload if payload is not None else {})
    response._content = body.encode("utf-8")
    response.headers.update(headers or {})
    return response


class FakeSession:
    """Stands in for ``requests.Session``; replays queued responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_client(source, *responses, max_attempts=3):
    session = FakeSession(*responses)
    client = ApiClient(
        source=source,
        base_url="https://api.example.test/",
        session=session,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0),
        sleep=lambda seconds: None,
    )
    return client, session


# --- ApiClient --------------------------------------------------------------


def test_api_client_retries_server_errors_then_decodes():
    client, session = make_client("ghl", make_response(503), make_response(200, {"ok": True}))

    assert client.get_json("/ping") == {"ok": True}
    assert len(session.calls) == 2
    assert session.calls[0]["url"] == "https://api.example.test/ping"


def test_api_client_retries_connection_errors():
    client, session = make_client("ghl", requests.ConnectionError("reset"), make_response(200, {"ok": 1}))

    assert client.get_json("ping") == {"ok": 1}
    assert len(session.calls) == 2


def test_api_client_raises_platform_rejection_for_4xx():
    client, session = make_client("stripe", make_response(401, text="invalid api key"))

    with pytest.raises(PlatformRejectedError) as excinfo:
        client.get_json("/v1/customers")

    assert excinfo.value.status_code == 401
    assert len(session.calls) == 1


def test_api_client_exhausts_retries_on_repeated_429():
    client, session = make_client("ghl", *[make_response(429, headers={"Retry-After": "0"}) for _ in range(3)])

    with pytest.raises(RetryExhaustedError) as excinfo:
        client.get_json("/contacts/")

    assert excinfo.value.attempts == 3
    assert len(session.calls) == 3


def test_post_without_idempotency_key_is_not_retried():
    client, session = make_client("ghl", make_response(500), make_response(200, {}))

    with pytest.raises(RetryExhaustedError):
        client.request("POST", "/contacts/", json={"email": "a@x.com"})
    assert len(session.calls) == 1


def test_post_with_idempotency_key_is_retried_and_sends_header():
    client, session = make_client("stripe", make_response(500), make_response(200, {"id": "cus_1"}))

    response = client.request("POST", "/v1/customers", data={"email": "a@x.com"}, idempotency_key="key-1")

    assert response.status_code == 200
    assert len(session.calls) == 2
    assert session.calls[1]["headers"]["Idempotency-Key"] == "key-1"


def test_decode_rejects_non_object_json():
    client, _ = make_client("ghl", make_response(200, [1, 2]))

    with pytest.raises(PlatformRejectedError, match="unexpected JSON shape"):
        client.get_json("/contacts/")


# --- GoHighLevel ------------------------------------------------------------


GHL_CONTACT = {
    "id": "g-1",
    "firstName": "Ana",
    "lastName": "Ruiz",
    "email": "ana@example.com",
    "phone": "+15551234567",
    "tags": ["vip"],
    "dndSettings": {"sms": {"status": "active"}, "email": {"status": "inactive"}},
    "attributionSource": {"utmSource": "facebook", "campaign": "spring"},
    "customFields": [{"id": "cf_1", "value": "gold"}, {"id": "cf_2", "value": ""}],
    "city": "Austin",
    "locationId": "loc-1",
}


def test_ghl_fetch_page_uses_offset_cursor():
    client, session = make_client(
        "ghl", make_response(200, {"contacts": [GHL_CONTACT, {**GHL_CONTACT, "id": "g-2", "email": "b@x.com"}]})
    )
    adapter = GHLAdapter(client=client, api_key="key", location_id="loc-1")

    page = adapter.fetch_page({"offset": 40}, 2)

    call = session.calls[0]
    assert call["params"] == {"locationId": "loc-1", "limit": 2, "skip": 40}
    assert call["headers"]["Authorization"] == "Bearer key"
    assert page.next_cursor == {"offset": 42}
    assert page.has_more is True
    assert [record.external_id for record in page.records] == ["g-1", "g-2"]
    assert adapter.initial_cursor() == {"offset": 0}


def test_ghl_short_page_is_last_page():
    client, _ = make_client("ghl", make_response(200, {"contacts": [GHL_CONTACT]}))
    page = GHLAdapter(client=client, api_key="key", location_id="loc-1").fetch_page(None, 100)

    assert page.has_more is False
    assert page.next_cursor == {"offset": 1}


def test_ghl_parse_record_maps_consent_and_tracking():
    contact = GHLAdapter.parse_record(GHL_CONTACT)

    assert contact.full_name == "Ana Ruiz"
    assert contact.tags == ("vip",)
    assert contact.sms_opt_in is False
    assert contact.email_opt_in is True
    assert contact.wa_opt_in is True
    assert contact.tracking_data == {
        "utm_source": "facebook",
        "utm_campaign": "spring",
        "ghl_location_id": "loc-1",
        "address": {"city": "Austin"},
        "custom_fields": {"cf_1": "gold"},
    }


def test_ghl_global_dnd_opts_out_every_channel():
    contact = GHLAdapter.parse_record({"id": "g-3", "email": "c@x.com", "dnd": True})

    assert (contact.wa_opt_in, contact.sms_opt_in, contact.email_opt_in) == (False, False, False)


# --- ManyChat ---------------------------------------------------------------


def test_manychat_pages_by_number():
    subscriber = {
        "id": 991,
        "first_name": "Lu",
        "whatsapp_phone": "+5215512345678",
        "optin_whatsapp": True,
        "tags": [{"name": "lead"}],
        "custom_fields": [{"name": "plan", "value": "pro"}],
    }
    client, session = make_client("manychat", make_response(200, {"status": "success", "data": [subscriber]}))
    adapter = ManyChatAdapter(client=client, api_key="mc-key")

    page = adapter.fetch_page({"page": 3}, 50)

    assert session.calls[0]["params"] == {"page": 3, "limit": 50}
    assert page.next_cursor == {"page": 4}
    assert page.has_more is False
    contact = page.records[0]
    assert contact.external_id == "991"
    assert contact.phone == "+5215512345678"
    assert contact.wa_opt_in is True
    assert contact.sms_opt_in is False
    assert contact.email_opt_in is True
    assert contact.tags == ("lead",)
    assert contact.tracking_data == {"plan": "pro"}


def test_manychat_error_envelope_is_rejected():
    client, _ = make_client("manychat", make_response(200, {"status": "error", "message": "Token expired"}))

    with pytest.raises(PlatformRejectedError, match="Token expired"):
        ManyChatAdapter(client=client, api_key="mc-key").fetch_page(None, 10)


# --- Stripe -----------------------------------------------------------------


def test_stripe_uses_last_customer_as_cursor_and_skips_customers_without_email():
    customers = [
        {"id": "cus_1", "email": "a@x.com", "name": "A", "metadata": {"plan": "pro"}},
        {"id": "cus_2", "email": None},
    ]
    client, session = make_client("stripe", make_response(200, {"data": customers, "has_more": True}))
    adapter = StripeAdapter(client=client, secret_key="sk_test")

    page = adapter.fetch_page({"starting_after": "cus_0"}, 500)

    assert session.calls[0]["params"] == {"limit": 100, "starting_after": "cus_0"}
    assert page.next_cursor == {"starting_after": "cus_2"}
    assert page.has_more is True
    assert page.raw_count == 2
    assert page.skipped == 1
    assert page.records[0].tracking_data == {"stripe_customer_id": "cus_1", "plan": "pro"}


def test_stripe_empty_page_keeps_cursor():
    client, _ = make_client("stripe", make_response(200, {"data": [], "has_more": True}))

    page = StripeAdapter(client=client, secret_key="sk_test").fetch_page({"starting_after": "cus_9"}, 10)

    assert page.has_more is False
    assert page.next_cursor == {"starting_after": "cus_9"}


# --- PayPal -----------------------------------------------------------------


FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _paypal(*responses):
    client, session = make_client("paypal", make_response(200, {"access_token": "tok"}), *responses)
    adapter = PayPalAdapter(client=client, client_id="id", secret="secret", now=lambda: FIXED_NOW)
    return adapter, session


def test_paypal_fetches_window_pages_with_oauth_token():
    transaction = {
        "payer_info": {
            "account_id": "PAYER1",
            "email_address": "Buyer@Example.com",
            "payer_name": {"given_name": "Bo", "surname": "Ye"},
        },
        "transaction_info": {"transaction_status": "S"},
    }
    adapter, session = _paypal(make_response(200, {"transaction_details": [transaction], "total_pages": 2}))
    cursor = adapter.initial_cursor()

    page = adapter.fetch_page(cursor, 100)

    token_call, search_call = session.calls
    assert token_call["method"] == "POST"
    assert token_call["auth"] == ("id", "secret")
    assert search_call["headers"]["Authorization"] == "Bearer tok"
    assert search_call["params"]["start_date"] == "2026-01-29T12:00:00Z"
    assert search_call["params"]["end_date"] == "2026-03-01T11:50:00Z"
    assert page.has_more is True
    assert page.next_cursor == {"page": 2, "start_date": cursor["start_date"], "end_date": cursor["end_date"]}
    contact = page.records[0]
    assert contact.external_id == "PAYER1"
    assert contact.email == "buyer@example.com"
    assert contact.full_name == "Bo Ye"
    assert contact.lifecycle_stage == "CUSTOMER"


def test_paypal_no_data_is_an_empty_page():
    adapter, _ = _paypal(make_response(400, text='{"name":"NO_DATA"}'))

    page = adapter.fetch_page(None, 100)

    assert page.records == ()
    assert page.has_more is False
    assert page.next_cursor["page"] == 1


def test_paypal_other_bad_requests_are_rejections():
    adapter, _ = _paypal(make_response(400, text='{"name":"INVALID_REQUEST"}'))

    with pytest.raises(PlatformRejectedError):
        adapter.fetch_page(None, 100)


def test_paypal_window_is_clamped():
    start, end = clamp_window(FIXED_NOW - timedelta(days=5000), FIXED_NOW, now=FIXED_NOW, default_days=31)

    assert end == FIXED_NOW - timedelta(minutes=10)
    assert (FIXED_NOW - start).days < 3 * 365


def test_paypal_status_mapping():
    assert map_paypal_status("S", None) == "paid"
    assert map_paypal_status(None, "T0006-COMPLETED") == "paid"
    assert map_paypal_status("D", None) == "failed"
    assert map_paypal_status("P", None) == "pending"
    assert PayPalAdapter.parse_record({"payer_info": {}}) is None


# --- factory ----------------------------------------------------------------


@pytest.mark.parametrize(
    "source, message",
    [
        ("ghl", "GHL_API_KEY"),
        ("manychat", "MANYCHAT_API_KEY"),
        ("stripe", "STRIPE_SECRET_KEY"),
        ("paypal", "PAYPAL_CLIENT_ID"),
        ("hubspot", "No adapter registered"),
    ],
)
def test_build_adapter_reports_missing_configuration(source, message):
    with pytest.raises(AdapterConfigError, match=message):
        build_adapter(source, {})


def test_build_adapter_wires_client_from_config():
    adapter = build_adapter(
        "GHL",
        {
            "GHL_API_KEY": "key",
            "GHL_LOCATION_ID": "loc",
            "GHL_API_BASE_URL": "https://ghl.example.test",
            "SYNC_RETRY_MAX_ATTEMPTS": 2,
            "SYNC_HTTP_TIMEOUT": 5,
            "SYNC_RATE_LIMITS": {"ghl": (10.0, 10)},
        },
    )

    assert isinstance(adapter, GHLAdapter)
    assert adapter.client.base_url == "https://ghl.example.test"
    assert adapter.client.retry_policy.max_attempts == 2
    assert adapter.client.timeout == 5.0
    assert adapter.client.limiter.capacity == 10


def test_build_adapter_for_staged_drain():
    adapter = build_adapter("staged", {})

    assert isinstance(adapter, StagedRecordsAdapter)
    assert adapter.stages_records is False
