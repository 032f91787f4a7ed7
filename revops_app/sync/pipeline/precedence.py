"""Apply the field precedence profile to canonical customers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from config.precedence import FieldRule, PrecedenceProfile

from revops_app.models import CanonicalCustomer

from .normalize import NormalizedContact


@dataclass(frozen=True)
class FieldChange:
    field_name: str
    previous: Any
    value: Any
    source: str


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def resolve_value(rule: FieldRule, current: Any, incoming: Any, source: str) -> Any:
    """Return the value the field should hold after merging ``incoming`` from ``source``."""

    strategy = rule.strategy
    if strategy == "opt_out_wins":
        if incoming is False:
            return False
        if incoming is True and current is None:
            return True
        return current

    if _is_empty(incoming):
        return current

    if strategy == "union":
        merged = list(current or [])
        for item in incoming:
            if item not in merged:
                merged.append(item)
        return merged

    if strategy == "merge_map":
        return {**dict(current or {}), **dict(incoming)}

    if _is_empty(current):
        return incoming

    if strategy == "source_overwrite":
        return incoming if source in rule.sources else current

    if strategy == "longer_from_sources":
        if source in rule.sources and len(str(incoming)) > len(str(current)):
            return incoming
        return current

    if strategy == "ranked":
        ranking = [str(item).upper() for item in rule.ranking]
        current_key, incoming_key = str(current).upper(), str(incoming).upper()
        if incoming_key in ranking and current_key in ranking:
            return incoming if ranking.index(incoming_key) > ranking.index(current_key) else current
        return current

    return current


def apply_precedence(
    customer: CanonicalCustomer,
    contact: NormalizedContact,
    profile: PrecedenceProfile,
) -> list[FieldChange]:
    """Merge ``contact`` into ``customer`` in place and return the fields that changed."""

    changes: list[FieldChange] = []
    incoming_values = contact.field_values()
    current_values = customer.snapshot()
    for field_name in profile.field_names:
        if field_name not in incoming_values:
            continue
        rule = profile.find_rule(field_name)
        previous = current_values.get(field_name)
        value = resolve_value(rule, previous, incoming_values[field_name], contact.source)
        if value == previous:
            continue
        setattr(customer, field_name, value)
        changes.append(FieldChange(field_name=field_name, previous=previous, value=value, source=contact.source))

    if changes:
        sources: dict[str, Any] = dict(customer.field_sources or {})
        for change in changes:
            sources[change.field_name] = change.source
        customer.field_sources = sources
    return changes


def seed_customer(contact: NormalizedContact, *, default_stage: str = "LEAD") -> CanonicalCustomer:
    """Build a new canonical customer from a normalized contact."""

    values: Mapping[str, Any] = contact.field_values()
    customer = CanonicalCustomer(
        email=values["email"],
        phone_e164=values["phone_e164"],
        full_name=values["full_name"],
        tags=list(values["tags"]),
        wa_opt_in=values["wa_opt_in"],
        sms_opt_in=values["sms_opt_in"],
        email_opt_in=values["email_opt_in"],
        lifecycle_stage=values["lifecycle_stage"] or default_stage,
        tracking_data=dict(values["tracking_data"]),
        acquisition_source=contact.source,
    )
    customer.field_sources = {
        name: contact.source for name, value in values.items() if not _is_empty(value)
    }
    return customer
