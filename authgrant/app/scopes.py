"""scopes.py — Parsing and formatting of space-delimited OAuth scope strings."""

from __future__ import annotations

from collections.abc import Iterable


def parse_scope(value: str | Iterable[str] | None) -> list[str]:
    """
    Normalises a scope string (or iterable of scopes) to a sorted list
    without duplicates. None and blank strings give an empty list.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split()
    else:
        items = [item.strip() for item in value]
    return sorted({item for item in items if item})


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(parse_scope(scopes))


def covers(granted: Iterable[str], requested: Iterable[str]) -> bool:
    """True if every requested scope is in `granted`."""
    return set(parse_scope(requested)) <= set(parse_scope(granted))
