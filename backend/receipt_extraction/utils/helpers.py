"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
from typing import Optional


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a :class:`datetime` object.

    The standard ``datetime.fromisoformat`` helper does not accept a lowercase
    ``z`` as the UTC designator on older interpreters. Some models return
    timestamps that end with ``z`` instead of the canonical ``Z``. This
    function normalises that case and returns ``None`` if the value cannot be
    parsed.
    """
    if not value:
        return None
    try:
        if value.endswith("z"):
            value = value[:-1] + "Z"
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return dt.datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_iso_date(value: str | None) -> Optional[dt.date]:
    """Parse a calendar date from an ISO8601 date or datetime string.

    Receipts carry a purchase date; when the model includes a time
    component it is dropped.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        pass
    parsed = parse_iso_datetime(value)
    return parsed.date() if parsed else None
