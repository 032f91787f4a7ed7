"""Source adapter interfaces and concrete implementations."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Type

import requests

from revops_app.sync.contracts import RawContact
from revops_app.sync.errors import AdapterConfigError
from revops_app.sync.resilience.rate_limit import get_rate_limiter
from revops_app.sync.resilience.retry import RetryPolicy

from .base import SourceAdapter
from .csv_contacts import (
    CSVAdapterError,
    CSVHeaderError,
    ContactCSVAdapter,
    ContactCSVRow,
    ContactCSVStatistics,
)
from .ghl import GHLAdapter
from .http import ApiClient
from .manychat import ManyChatAdapter
from .paypal import PayPalAdapter
from .staged import StagedRecordsAdapter
from .stripe import StripeAdapter

ADAPTER_CLASSES: Dict[str, Type[SourceAdapter]] = {
    GHLAdapter.name: GHLAdapter,
    ManyChatAdapter.name: ManyChatAdapter,
    StripeAdapter.name: StripeAdapter,
    PayPalAdapter.name: PayPalAdapter,
}

BASE_URL_SETTINGS = {
    "ghl": "GHL_API_BASE_URL",
    "manychat": "MANYCHAT_API_BASE_URL",
    "stripe": "STRIPE_API_BASE_URL",
    "paypal": "PAYPAL_API_BASE_URL",
}


def parse_staged_payload(source: str, payload: Mapping[str, Any]) -> RawContact | None:
    """Re-parse a staged payload with the parser of the source that produced it."""

    adapter_cls = ADAPTER_CLASSES.get(source.lower())
    if adapter_cls is not None:
        return adapter_cls.parse_record(payload)
    return RawContact.from_mapping(source, payload)


def payload_for_staging(contact: RawContact) -> dict[str, Any]:
    """Native record for API sources, canonical payload for everything else."""

    if contact.source in ADAPTER_CLASSES and contact.raw:
        return dict(contact.raw)
    return contact.to_payload()


def build_adapter(
    source: str,
    config: Mapping[str, Any],
    *,
    session: requests.Session | None = None,
) -> SourceAdapter:
    """
    Construct the adapter for ``source`` from application config.

    Raises:
        AdapterConfigError: For unknown sources or missing credentials.
    """

    key = source.strip().lower()
    if key == StagedRecordsAdapter.name:
        return StagedRecordsAdapter(parser=parse_staged_payload)
    if key not in ADAPTER_CLASSES:
        raise AdapterConfigError(f"No adapter registered for source '{source}'.", source=key)

    client = ApiClient(
        source=key,
        base_url=str(config.get(BASE_URL_SETTINGS[key]) or ""),
        session=session,
        limiter=get_rate_limiter(key, config.get("SYNC_RATE_LIMITS") or {}),
        retry_policy=RetryPolicy.from_config(config),
        timeout=float(config.get("SYNC_HTTP_TIMEOUT", 30.0)),
    )
    if key == GHLAdapter.name:
        return GHLAdapter(
            client=client,
            api_key=config.get("GHL_API_KEY"),
            location_id=config.get("GHL_LOCATION_ID"),
        )
    if key == ManyChatAdapter.name:
        return ManyChatAdapter(client=client, api_key=config.get("MANYCHAT_API_KEY"))
    if key == StripeAdapter.name:
        return StripeAdapter(client=client, secret_key=config.get("STRIPE_SECRET_KEY"))
    return PayPalAdapter(
        client=client,
        client_id=config.get("PAYPAL_CLIENT_ID"),
        secret=config.get("PAYPAL_SECRET"),
        default_window_days=int(config.get("PAYPAL_DEFAULT_WINDOW_DAYS", 31)),
    )


__all__ = [
    "ADAPTER_CLASSES",
    "ApiClient",
    "CSVAdapterError",
    "CSVHeaderError",
    "ContactCSVAdapter",
    "ContactCSVRow",
    "ContactCSVStatistics",
    "GHLAdapter",
    "ManyChatAdapter",
    "PayPalAdapter",
    "SourceAdapter",
    "StagedRecordsAdapter",
    "StripeAdapter",
    "build_adapter",
    "parse_staged_payload",
    "payload_for_staging",
]
