"""
Webhook receivers and the identity-merge RPC.

Both paths write canonical data, so both are guarded by the datastore circuit
breaker: when the probe fails the delivery is acknowledged with
``status=circuit_open`` and nothing is written. Accepted contacts are staged
first and then merged inline.
"""

from __future__ import annotations

import hmac
import time
from http import HTTPStatus
from typing import Any, Iterable, Mapping

from flask import Blueprint, current_app, jsonify, request

from config.monitoring import SyncMonitoring
from revops_app.auth import ensure_operator_api
from revops_app.sync.adapters import GHLAdapter, parse_staged_payload
from revops_app.sync.contracts import RawContact
from revops_app.sync.resilience import get_datastore_breaker
from revops_app.utils.sync import is_sync_enabled

from .errors import UnknownSourceError
from .pipeline import BatchMergeSummary, IdentityMerger, dedupe_contacts, mark_processed, merge_contacts, stage_contacts
from .utils import ensure_known_source

webhooks_blueprint = Blueprint("sync_webhooks", __name__)

WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"
MAX_BATCH_SIZE = 500

GHL_IGNORED_EVENTS = frozenset({"ContactDelete"})


def _circuit_open_response(source: str, started: float):
    SyncMonitoring.record_webhook(source=source, status="circuit_open", duration_seconds=time.perf_counter() - started)
    current_app.logger.warning(
        "Datastore circuit open; delivery acknowledged without writes",
        extra={"sync_source": source, "sync_circuit_state": get_datastore_breaker(current_app).state.value},
    )
    return jsonify({"success": True, "status": "circuit_open"}), HTTPStatus.OK


def _secret_matches() -> bool:
    expected = current_app.config.get("SYNC_WEBHOOK_SECRET")
    if not expected:
        return True
    supplied = request.headers.get(WEBHOOK_SECRET_HEADER) or ""
    return hmac.compare_digest(str(expected), supplied)


def stage_and_merge(contacts: Iterable[RawContact]) -> BatchMergeSummary:
    """Stage contacts, merge them in the request session and record the outcomes."""

    app = current_app._get_current_object()
    page = dedupe_contacts(contacts)
    stage_contacts(page)
    summary = merge_contacts(page, merger=IdentityMerger.from_config(app.config))
    mark_processed(summary.outcomes)
    return summary


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@webhooks_blueprint.post("/webhooks/<source>")
def receive_webhook(source: str):
    started = time.perf_counter()
    source = (source or "").strip().lower()
    if source == GHLAdapter.name:
        return _receive_ghl(started)

    if not is_sync_enabled(current_app):
        return jsonify({"error": "Sync is disabled."}), HTTPStatus.NOT_FOUND
    try:
        source = ensure_known_source(current_app, source)
    except UnknownSourceError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.NOT_FOUND
    if not _secret_matches():
        return jsonify({"error": "Invalid webhook secret."}), HTTPStatus.UNAUTHORIZED

    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        SyncMonitoring.record_webhook(source=source, status="invalid", duration_seconds=time.perf_counter() - started)
        return jsonify({"success": False, "error": "Invalid JSON"}), HTTPStatus.BAD_REQUEST

    if not get_datastore_breaker(current_app).allow():
        return _circuit_open_response(source, started)

    contact = parse_staged_payload(source, payload)
    if contact is None:
        SyncMonitoring.record_webhook(source=source, status="skipped", duration_seconds=time.perf_counter() - started)
        return jsonify({"success": True, "action": "skipped"}), HTTPStatus.OK

    outcome = stage_and_merge([contact]).outcomes[0]
    SyncMonitoring.record_webhook(source=source, status=outcome.action, duration_seconds=time.perf_counter() - started)
    return jsonify(outcome.as_response()), HTTPStatus.OK


def _receive_ghl(started: float):
    """GHL retries anything but 200, so every outcome is acknowledged with 200."""

    source = GHLAdapter.name

    def _ack(body: dict[str, Any], status: str):
        SyncMonitoring.record_webhook(source=source, status=status, duration_seconds=time.perf_counter() - started)
        return jsonify(body), HTTPStatus.OK

    if not is_sync_enabled(current_app):
        return _ack({"success": False, "error": "Sync is disabled."}, "disabled")
    if not _secret_matches():
        current_app.logger.warning("Rejected GHL webhook with invalid secret", extra={"sync_source": source})
        return _ack({"success": False, "error": "Invalid webhook secret."}, "unauthorized")

    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        current_app.logger.error("GHL webhook carried invalid JSON", extra={"sync_source": source})
        return _ack({"success": False, "error": "Invalid JSON"}, "invalid")
    contact_id = payload.get("id")
    if not contact_id:
        current_app.logger.warning("GHL webhook without contact id", extra={"sync_source": source})
        return _ack({"success": False, "error": "Missing contact ID"}, "invalid")

    event_type = str(payload.get("type") or "")
    if event_type in GHL_IGNORED_EVENTS:
        current_app.logger.info(
            "GHL contact deleted upstream; canonical record kept",
            extra={"sync_source": source, "sync_external_id": str(contact_id), "sync_event": event_type},
        )
        return _ack({"success": True, "action": "ignored", "event": event_type}, "ignored")

    if not get_datastore_breaker(current_app).allow():
        return _circuit_open_response(source, started)

    contact = GHLAdapter.parse_record(payload)
    if contact is None:
        return _ack({"success": True, "action": "skipped"}, "skipped")
    outcome = stage_and_merge([contact]).outcomes[0]
    current_app.logger.info(
        "GHL webhook merged",
        extra={
            "sync_source": source,
            "sync_external_id": outcome.external_id,
            "sync_merge_action": outcome.action,
            "sync_event": event_type,
        },
    )
    return _ack({**outcome.as_response(), "event": event_type or None}, outcome.action)


# ---------------------------------------------------------------------------
# Identity merge RPC
# ---------------------------------------------------------------------------


@webhooks_blueprint.post("/sync/identity/merge")
def identity_merge():
    """
    Merge one contact (JSON object) or a batch (``{"contacts": [...]}``).
    """
    started = time.perf_counter()
    if not is_sync_enabled(current_app):
        return jsonify({"error": "Sync is disabled."}), HTTPStatus.NOT_FOUND
    auth_response = ensure_operator_api()
    if auth_response:
        return auth_response

    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        return jsonify({"success": False, "error": "Invalid JSON"}), HTTPStatus.BAD_REQUEST

    is_batch = "contacts" in payload
    items = payload.get("contacts") if is_batch else [payload]
    if not isinstance(items, list) or not items:
        return jsonify({"success": False, "error": "contacts must be a non-empty list"}), HTTPStatus.BAD_REQUEST
    if len(items) > MAX_BATCH_SIZE:
        return (
            jsonify({"success": False, "error": f"At most {MAX_BATCH_SIZE} contacts per request"}),
            HTTPStatus.BAD_REQUEST,
        )

    contacts: list[RawContact] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping) or not str(item.get("source") or "").strip():
            return (
                jsonify({"success": False, "error": f"contacts[{index}] requires a source"}),
                HTTPStatus.BAD_REQUEST,
            )
        contacts.append(RawContact.from_mapping(str(item["source"]), item))

    if not get_datastore_breaker(current_app).allow():
        return _circuit_open_response("rpc", started)

    summary = stage_and_merge(contacts)
    SyncMonitoring.record_webhook(source="rpc", status="merged", duration_seconds=time.perf_counter() - started)
    if not is_batch:
        return jsonify(summary.outcomes[0].as_response()), HTTPStatus.OK
    return (
        jsonify(
            {
                "success": summary.failed == 0,
                "results": [outcome.as_response() for outcome in summary.outcomes],
                "summary": summary.as_dict(),
            }
        ),
        HTTPStatus.OK,
    )
