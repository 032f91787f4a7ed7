"""
Field precedence configuration for canonical customer merges.

The identity merger loads this module to decide, per field, whether an
incoming value from a given source may replace the value already stored on a
canonical customer. Rules are data, not code: the built-in profile below can
be replaced by a JSON or YAML file referenced through the
``SYNC_PRECEDENCE_PROFILE_PATH`` setting. Every profile carries a ``version``
that is stamped on sync runs so merges can be traced back to the rules that
produced them.

Strategies:

``fill_null``
    Incoming value only fills an empty field.
``source_overwrite``
    Incoming value replaces the stored one when it comes from one of
    ``sources``; otherwise behaves like ``fill_null``.
``longer_from_sources``
    Incoming value replaces the stored one when it comes from one of
    ``sources`` and is strictly longer; otherwise ``fill_null``.
``union``
    Set union of list values, order preserved (tags).
``opt_out_wins``
    Tri-state consent flags: an explicit ``False`` from any source wins,
    ``True`` only fills an unknown value.
``merge_map``
    Dictionary merge where incoming keys overwrite stored keys.
``ranked``
    The value ranked higher in ``ranking`` wins; unknown values only fill.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

import yaml

STRATEGIES: frozenset[str] = frozenset(
    {
        "fill_null",
        "source_overwrite",
        "longer_from_sources",
        "union",
        "opt_out_wins",
        "merge_map",
        "ranked",
    }
)


@dataclass(frozen=True)
class FieldRule:
    """
    Precedence details for a single canonical customer field.

    Attributes:
        field_name: Attribute on ``CanonicalCustomer``.
        strategy: One of ``STRATEGIES``.
        sources: Source keys allowed to overwrite a non-null value for the
            ``source_overwrite`` and ``longer_from_sources`` strategies.
        ranking: Ordered values, lowest first, for the ``ranked`` strategy.
    """

    field_name: str
    strategy: str = "fill_null"
    sources: Sequence[str] = ()
    ranking: Sequence[str] = ()


@dataclass(frozen=True)
class FieldGroup:
    """Group of related fields, used when summarizing decisions."""

    name: str
    display_name: str
    fields: Sequence[FieldRule]


@dataclass(frozen=True)
class PrecedenceProfile:
    key: str
    version: str
    label: str
    description: str
    field_groups: Sequence[FieldGroup]

    def find_rule(self, field_name: str) -> FieldRule:
        for group in self.field_groups:
            for rule in group.fields:
                if rule.field_name == field_name:
                    return rule
        return FieldRule(field_name)

    def group_for(self, field_name: str) -> str:
        for group in self.field_groups:
            if any(rule.field_name == field_name for rule in group.fields):
                return group.name
        return "other"

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(rule.field_name for group in self.field_groups for rule in group.fields)


# ---------------------------------------------------------------------------
# Default profile
# ---------------------------------------------------------------------------

IDENTITY_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("email", "fill_null"),
    FieldRule("phone_e164", "source_overwrite", sources=("web", "csv")),
    FieldRule("full_name", "longer_from_sources", sources=("ghl", "manychat")),
)

CONSENT_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("wa_opt_in", "opt_out_wins"),
    FieldRule("sms_opt_in", "opt_out_wins"),
    FieldRule("email_opt_in", "opt_out_wins"),
)

ENRICHMENT_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("tags", "union"),
    FieldRule("tracking_data", "merge_map"),
    FieldRule("lifecycle_stage", "ranked", ranking=("LEAD", "TRIAL", "CUSTOMER")),
)

DEFAULT_PROFILE = PrecedenceProfile(
    key="default",
    version="1",
    label="Default precedence",
    description="Stored values win unless empty; web/csv may correct phones, CRM sources may lengthen names, "
    "opt-outs from any source stick, tags accumulate.",
    field_groups=(
        FieldGroup("identity", "Identity", IDENTITY_FIELDS),
        FieldGroup("consent", "Consent", CONSENT_FIELDS),
        FieldGroup("enrichment", "Enrichment", ENRICHMENT_FIELDS),
    ),
)


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class PrecedenceConfigError(RuntimeError):
    """Raised when a precedence override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise PrecedenceConfigError(f"Precedence override file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise PrecedenceConfigError(f"Unable to read precedence override file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise PrecedenceConfigError(f"Precedence override file {path} is not valid: {exc}") from exc

    if not isinstance(data, Mapping):
        raise PrecedenceConfigError("Precedence override must be a JSON/YAML object.")
    return dict(data)


def _coerce_strings(value: object | None, *, item_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return tuple(str(item).strip() for item in value if str(item).strip())
    raise PrecedenceConfigError(f"Expected sequence for {item_name}, got {type(value).__name__}.")


def _coerce_field_rule(raw: Mapping[str, object]) -> FieldRule:
    name = str(raw.get("field_name") or "").strip()
    if not name:
        raise PrecedenceConfigError("Each field rule requires a non-empty field_name.")
    strategy = str(raw.get("strategy") or "fill_null").strip()
    if strategy not in STRATEGIES:
        raise PrecedenceConfigError(f"Unknown strategy '{strategy}' for field {name}.")
    sources = tuple(s.lower() for s in _coerce_strings(raw.get("sources"), item_name=f"{name}.sources"))
    ranking = _coerce_strings(raw.get("ranking"), item_name=f"{name}.ranking")
    if strategy in {"source_overwrite", "longer_from_sources"} and not sources:
        raise PrecedenceConfigError(f"Strategy '{strategy}' for field {name} requires sources.")
    if strategy == "ranked" and not ranking:
        raise PrecedenceConfigError(f"Strategy 'ranked' for field {name} requires ranking.")
    return FieldRule(field_name=name, strategy=strategy, sources=sources, ranking=ranking)


def _coerce_field_group(raw: Mapping[str, object]) -> FieldGroup:
    name = str(raw.get("name") or "").strip()
    if not name:
        raise PrecedenceConfigError("Each field group requires a non-empty name.")
    display_name = str(raw.get("display_name") or name).strip()
    fields_raw = raw.get("fields") or ()
    if not isinstance(fields_raw, Iterable) or isinstance(fields_raw, (str, bytes)):
        raise PrecedenceConfigError(f"Group {name} fields must be a sequence.")
    rules = tuple(_coerce_field_rule(rule) for rule in fields_raw)  # type: ignore[arg-type]
    return FieldGroup(name=name, display_name=display_name or name.title(), fields=rules)


def _coerce_profile(raw: Mapping[str, object]) -> PrecedenceProfile:
    version = str(raw.get("version") or "").strip()
    if not version:
        raise PrecedenceConfigError("Precedence override requires a version.")
    raw_groups = raw.get("field_groups") or ()
    if not isinstance(raw_groups, Iterable) or isinstance(raw_groups, (str, bytes)):
        raise PrecedenceConfigError("field_groups must be a sequence.")
    groups = tuple(_coerce_field_group(group) for group in raw_groups)  # type: ignore[arg-type]
    if not groups:
        groups = tuple(DEFAULT_PROFILE.field_groups)
    return PrecedenceProfile(
        key=str(raw.get("key") or DEFAULT_PROFILE.key).strip() or DEFAULT_PROFILE.key,
        version=version,
        label=str(raw.get("label") or DEFAULT_PROFILE.label).strip(),
        description=str(raw.get("description") or DEFAULT_PROFILE.description).strip(),
        field_groups=groups,
    )


def load_profile(env: Mapping[str, object] | None = None) -> PrecedenceProfile:
    """
    Load the active precedence profile.

    ``env`` is any mapping holding ``SYNC_PRECEDENCE_PROFILE_PATH`` (the Flask
    config or ``os.environ``). Without an override the built-in defaults are
    returned.
    """

    env_map = env or {}
    override_path = env_map.get("SYNC_PRECEDENCE_PROFILE_PATH")
    if not override_path:
        return DEFAULT_PROFILE
    return _coerce_profile(_load_override(Path(str(override_path))))


__all__ = [
    "DEFAULT_PROFILE",
    "FieldGroup",
    "FieldRule",
    "PrecedenceConfigError",
    "PrecedenceProfile",
    "STRATEGIES",
    "load_profile",
]
