"""
Coercion of operator-supplied listing parameters.

Query strings and CLI options arrive as loose strings; these helpers turn
them into typed values for ``RunFilters`` and ``ConflictFilters`` and raise
``ValueError`` with a message fit to show the operator.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Generic, Iterable, TypeVar

from revops_app.models import as_utc

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100

TRUTHY = frozenset({"1", "true", "yes", "y", "on"})
FALSY = frozenset({"0", "false", "no", "n", "off"})

E = TypeVar("E", bound=Enum)
T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a listing plus the numbers needed to render a pager."""

    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if not self.total:
            return 0
        return -(-self.total // self.page_size)


def positive_int(value: Any, *, default: int, label: str = "value") -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValueError(f"Expected positive integer for {label}, received '{value}'.")
    if isinstance(value, int):
        return max(value, 1)
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"Expected positive integer for {label}, received '{value}'.")
    return max(int(text), 1)


def page_window(page: Any, page_size: Any) -> tuple[int, int]:
    """``(page, page_size)`` with the size capped at ``MAX_PAGE_SIZE``."""
    size = positive_int(page_size, default=DEFAULT_PAGE_SIZE, label="page_size")
    return positive_int(page, default=1, label="page"), min(size, MAX_PAGE_SIZE)


def enum_member(enum_cls: type[E], value: Any, label: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported {label} '{value}'.") from None


def enum_members(enum_cls: type[E], values: Iterable[Any] | None, label: str) -> tuple[E, ...]:
    return tuple(enum_member(enum_cls, value, label) for value in values or () if value)


def source_names(values: Iterable[str] | None) -> tuple[str, ...]:
    return tuple(sorted({value.strip().lower() for value in values or () if value and value.strip()}))


def flag(value: str | bool | None, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in TRUTHY:
        return True
    if normalized in FALSY:
        return False
    return default


def timestamp(value: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    """
    Parse an ISO date or datetime into an aware UTC value.

    A bare date expands to the start of that day, or to its last
    microsecond when ``end_of_day`` is set, so ``started_to=2024-05-01``
    includes runs started on the first of May.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        raise ValueError(f"Unable to parse datetime value '{value}'. Expected an ISO 8601 date or datetime.") from None


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "Page",
    "enum_member",
    "enum_members",
    "flag",
    "isoformat",
    "page_window",
    "positive_int",
    "source_names",
    "timestamp",
]
