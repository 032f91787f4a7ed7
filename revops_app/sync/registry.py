"""
Source registry.

Sources register metadata here so configuration validation can occur without
constructing adapters or touching credentials.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class SourceDescriptor:
    """Metadata describing a sync source."""

    name: str
    title: str
    cursor_kind: str
    required_settings: Tuple[str, ...] = ()
    webhook: bool = False
    summary: str | None = None

    def missing_settings(self, config: Mapping[str, object]) -> Tuple[str, ...]:
        return tuple(name for name in self.required_settings if not config.get(name))


def get_source_registry() -> Mapping[str, SourceDescriptor]:
    """Return the registry of supported sync sources."""

    return OrderedDict(
        (
            (
                "ghl",
                SourceDescriptor(
                    name="ghl",
                    title="GoHighLevel",
                    cursor_kind="keyset",
                    required_settings=("GHL_API_KEY", "GHL_LOCATION_ID"),
                    webhook=True,
                    summary="CRM contacts paged by (startAfter, startAfterId).",
                ),
            ),
            (
                "manychat",
                SourceDescriptor(
                    name="manychat",
                    title="ManyChat",
                    cursor_kind="offset",
                    required_settings=("MANYCHAT_API_KEY",),
                    webhook=True,
                    summary="Messaging subscribers paged by page number.",
                ),
            ),
            (
                "stripe",
                SourceDescriptor(
                    name="stripe",
                    title="Stripe",
                    cursor_kind="keyset",
                    required_settings=("STRIPE_SECRET_KEY",),
                    summary="Billing customers paged by starting_after.",
                ),
            ),
            (
                "paypal",
                SourceDescriptor(
                    name="paypal",
                    title="PayPal",
                    cursor_kind="offset",
                    required_settings=("PAYPAL_CLIENT_ID", "PAYPAL_SECRET"),
                    summary="Transaction payers in date windows.",
                ),
            ),
            (
                "staged",
                SourceDescriptor(
                    name="staged",
                    title="Staged records",
                    cursor_kind="keyset",
                    summary="Drain of unprocessed staging rows (webhooks and CSV uploads).",
                ),
            ),
        )
    )


def resolve_sources(
    configured: Sequence[str],
    registry: Mapping[str, SourceDescriptor] | None = None,
) -> Iterable[SourceDescriptor]:
    """
    Map configured source names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_source_registry()
    unknown = sorted({source for source in configured if source not in registry})
    if unknown:
        raise ValueError(
            "Unknown sync sources configured: "
            + ", ".join(unknown)
            + ". Update SYNC_SOURCES or register these sources first."
        )
    return tuple(registry[source] for source in configured)
