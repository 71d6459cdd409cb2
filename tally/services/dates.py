"""Strict calendar-date parsing for UI input and import files."""

from __future__ import annotations

import re
from datetime import date
from typing import Optional

_ISO_DATE_PATTERN = re.compile(r"^([0-9]{4})-([0-9]{2})-([0-9]{2})$")
_IMPORT_DATE_PATTERN = re.compile(r"^([0-9]{2})-([0-9]{2})-([0-9]{4})$")


def _build_iso(year: int, month: int, day: int) -> Optional[str]:
    try:
        candidate = date(year, month, day)
    except ValueError:
        return None
    if (candidate.year, candidate.month, candidate.day) != (year, month, day):
        return None
    return candidate.isoformat()


def parse_strict_date(value: Optional[str]) -> Optional[str]:
    """Return ``value`` if it is a real ``YYYY-MM-DD`` date, else ``None``.

    The shape is checked before the calendar, so ``2026-2-7`` is rejected
    even though it names a real day.
    """

    if not isinstance(value, str):
        return None
    match = _ISO_DATE_PATTERN.fullmatch(value)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    return _build_iso(year, month, day)


def parse_import_date(value: Optional[str]) -> Optional[str]:
    """Convert an import-file ``MM-DD-YYYY`` date to ``YYYY-MM-DD``."""

    if not isinstance(value, str):
        return None
    match = _IMPORT_DATE_PATTERN.fullmatch(value.strip())
    if not match:
        return None
    month, day, year = (int(part) for part in match.groups())
    return _build_iso(year, month, day)
