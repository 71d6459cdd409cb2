from typing import Iterable

from tally.core.config import KeywordRule


def categorize(description: str, rules: Iterable[KeywordRule], fallback: str = "Uncategorized") -> str:
    """Return the category of the first rule with a keyword inside ``description``.

    Matching is a case-insensitive substring test, so rule order matters:
    ``"Uber Eats"`` hits the ``uber eats`` keyword of ``Food`` before
    ``Transport`` gets a chance to match ``uber``.
    """

    lowered = (description or "").lower()
    for rule in rules:
        if any(keyword in lowered for keyword in rule.keywords):
            return rule.category
    return fallback
