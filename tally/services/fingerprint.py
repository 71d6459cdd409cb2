"""Content fingerprints used as the dedup key for imported records."""

from __future__ import annotations

import hashlib
import re
import secrets

_MULTI_SPACE_PATTERN = re.compile(r"\s+")


def normalize_display(value: str | None) -> str:
    """Trim and collapse internal whitespace runs to a single space."""

    if not isinstance(value, str):
        return ""
    return _MULTI_SPACE_PATTERN.sub(" ", value.strip())


def normalize_for_dedup(value: str | None) -> str:
    return normalize_display(value).lower()


def _digest(*parts) -> str:
    base = "|".join(str(part) for part in parts)
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def expense_fingerprint(
    txn_date: str,
    description_dedup: str,
    amount_cents: int,
    category_dedup: str,
    currency: str,
) -> str:
    return _digest(txn_date, description_dedup, amount_cents, category_dedup, currency)


def income_fingerprint(
    income_date: str,
    amount_cents: int,
    source_dedup: str,
    currency: str,
) -> str:
    # The "income" prefix keeps income digests disjoint from expense ones.
    return _digest("income", income_date, amount_cents, source_dedup, currency)


def rescue_fingerprint(fingerprint: str) -> str:
    """Make a held-back duplicate insertable by suffixing a random token."""

    return f"{fingerprint}:{secrets.token_hex(8)}"
