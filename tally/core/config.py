from __future__ import annotations

import copy
import os

import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

DEFAULT_CONFIG = {
    "server": {"host": "0.0.0.0", "port": 8013, "data_folder": "data"},
    "import": {
        "accepted_formats": [".csv"],
        "accepted_mime_types": [
            "text/csv",
            "application/csv",
            "application/vnd.ms-excel",
        ],
        "max_upload_bytes": 2 * 1024 * 1024,
        "max_files_per_upload": 10,
        "fingerprint_batch_size": 500,
        "default_currency": "CAD",
    },
    "categories": {
        "fallback": "Uncategorized",
        "keywords": [
            {
                "category": "Food",
                "keywords": [
                    "grocery",
                    "supermarket",
                    "loblaws",
                    "metro",
                    "no frills",
                    "freshco",
                    "sobeys",
                    "walmart",
                    "costco",
                    "restaurant",
                    "mcdonald",
                    "tim horton",
                    "starbucks",
                    "subway",
                    "pizza",
                    "cafe",
                    "coffee",
                    "doordash",
                    "uber eats",
                    "skip the dishes",
                ],
            },
            {
                "category": "Transport",
                "keywords": [
                    "uber",
                    "lyft",
                    "taxi",
                    "transit",
                    "presto",
                    "gas",
                    "shell",
                    "petro",
                    "esso",
                    "parking",
                ],
            },
            {
                "category": "Shopping",
                "keywords": ["amazon", "best buy", "canadian tire", "shoppers", "dollarama"],
            },
            {
                "category": "Entertainment",
                "keywords": ["netflix", "spotify", "disney", "apple", "google", "subscription"],
            },
            {
                "category": "Utilities",
                "keywords": [
                    "hydro",
                    "enbridge",
                    "rogers",
                    "bell",
                    "telus",
                    "fido",
                    "internet",
                    "phone",
                    "insurance",
                ],
            },
            {
                "category": "Health",
                "keywords": ["pharmacy", "dentist", "doctor", "medical", "health", "clinic"],
            },
        ],
    },
    "portfolio": {
        "default_name": "My Portfolio",
        "base_currency": "CAD",
        "security_currency": "USD",
    },
    "diagnostics": {
        "debug_logging": False,
        "log_max_bytes": 1_048_576,
        "log_retention": 5,
    },
}


def _normalize_extensions(raw: Any, fallback: List[str]) -> List[str]:
    normalized_formats: List[str] = []
    if isinstance(raw, (list, tuple, set)):
        for ext in raw:
            if not isinstance(ext, str):
                continue
            normalized = ext.strip().lower()
            if not normalized:
                continue
            if not normalized.startswith("."):
                normalized = f".{normalized}"
            if normalized not in normalized_formats:
                normalized_formats.append(normalized)
    return normalized_formats or list(fallback)


def _normalize_strings(raw: Any, fallback: List[str]) -> List[str]:
    values: List[str] = []
    if isinstance(raw, (list, tuple, set)):
        for item in raw:
            if isinstance(item, str) and item.strip():
                values.append(item.strip().lower())
    return values or list(fallback)


def _positive_int(raw: Any, fallback: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return fallback
    return value if value > 0 else fallback


@dataclass(frozen=True)
class KeywordRule:
    """Assigns ``category`` when any keyword occurs in a description."""

    category: str
    keywords: Tuple[str, ...]


def parse_keyword_rules(raw: Any) -> Tuple[KeywordRule, ...]:
    """Return the ordered keyword table, skipping malformed entries."""

    if raw is None:
        raw = DEFAULT_CONFIG["categories"]["keywords"]
    rules: List[KeywordRule] = []
    if not isinstance(raw, (list, tuple)):
        return ()
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        category = entry.get("category")
        keywords = entry.get("keywords")
        if not isinstance(category, str) or not category.strip():
            continue
        if not isinstance(keywords, (list, tuple)):
            continue
        cleaned = tuple(
            keyword.strip().lower()
            for keyword in keywords
            if isinstance(keyword, str) and keyword.strip()
        )
        if cleaned:
            rules.append(KeywordRule(category=category.strip(), keywords=cleaned))
    return tuple(rules)


@dataclass(frozen=True)
class ImportSettings:
    """Resolved limits and defaults used by the CSV import pipeline."""

    max_upload_bytes: int = DEFAULT_CONFIG["import"]["max_upload_bytes"]
    accepted_formats: Tuple[str, ...] = tuple(DEFAULT_CONFIG["import"]["accepted_formats"])
    accepted_mime_types: Tuple[str, ...] = tuple(DEFAULT_CONFIG["import"]["accepted_mime_types"])
    max_files_per_upload: int = DEFAULT_CONFIG["import"]["max_files_per_upload"]
    fingerprint_batch_size: int = DEFAULT_CONFIG["import"]["fingerprint_batch_size"]
    currency: str = DEFAULT_CONFIG["import"]["default_currency"]
    keyword_rules: Tuple[KeywordRule, ...] = field(default_factory=lambda: parse_keyword_rules(None))
    fallback_category: str = DEFAULT_CONFIG["categories"]["fallback"]

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "ImportSettings":
        """Build settings from a raw configuration mapping.

        Invalid or missing values fall back to :data:`DEFAULT_CONFIG` so a
        hand-edited ``config.yaml`` can never disable the upload limits.
        """

        defaults = DEFAULT_CONFIG["import"]
        import_cfg = raw.get("import", {}) if isinstance(raw, dict) else {}
        if not isinstance(import_cfg, dict):
            import_cfg = {}

        currency = import_cfg.get("default_currency")
        if not isinstance(currency, str) or not currency.strip():
            currency = defaults["default_currency"]

        categories_cfg = raw.get("categories", {}) if isinstance(raw, dict) else {}
        if not isinstance(categories_cfg, dict):
            categories_cfg = {}
        fallback_category = categories_cfg.get("fallback")
        if not isinstance(fallback_category, str) or not fallback_category.strip():
            fallback_category = DEFAULT_CONFIG["categories"]["fallback"]

        return cls(
            max_upload_bytes=_positive_int(
                import_cfg.get("max_upload_bytes"), defaults["max_upload_bytes"]
            ),
            accepted_formats=tuple(
                _normalize_extensions(import_cfg.get("accepted_formats"), defaults["accepted_formats"])
            ),
            accepted_mime_types=tuple(
                _normalize_strings(
                    import_cfg.get("accepted_mime_types"), defaults["accepted_mime_types"]
                )
            ),
            max_files_per_upload=_positive_int(
                import_cfg.get("max_files_per_upload"), defaults["max_files_per_upload"]
            ),
            fingerprint_batch_size=_positive_int(
                import_cfg.get("fingerprint_batch_size"), defaults["fingerprint_batch_size"]
            ),
            currency=currency.strip().upper(),
            keyword_rules=parse_keyword_rules(categories_cfg.get("keywords")),
            fallback_category=fallback_category.strip(),
        )


@dataclass
class AppConfig:
    raw: Dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULT_CONFIG))
    path: str = ""

    @staticmethod
    def _merge_with_defaults(overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Merge overrides with :data:`DEFAULT_CONFIG` recursively.

        Every key defined in ``DEFAULT_CONFIG`` ends up in the resulting
        mapping while user-provided overrides and additional keys are kept.
        Nested dictionaries are merged recursively; lists are replaced
        wholesale so a custom keyword table fully overrides the default one.
        """

        def merge(defaults: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
            merged = copy.deepcopy(updates) if isinstance(updates, dict) else {}
            for key, value in defaults.items():
                if isinstance(value, dict):
                    existing = merged.get(key)
                    if isinstance(existing, dict):
                        merged[key] = merge(value, existing)
                    else:
                        merged[key] = merge(value, {})
                else:
                    merged.setdefault(key, copy.deepcopy(value))
            return merged

        sanitized = overrides if isinstance(overrides, dict) else {}
        return merge(copy.deepcopy(DEFAULT_CONFIG), sanitized)

    @classmethod
    def load(cls, data_dir: str) -> "AppConfig":
        os.makedirs(data_dir, exist_ok=True)
        cfg_path = os.path.join(data_dir, "config.yaml")
        if not os.path.exists(cfg_path):
            with open(cfg_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(DEFAULT_CONFIG, f, sort_keys=False)
            return cls(raw=copy.deepcopy(DEFAULT_CONFIG), path=cfg_path)
        with open(cfg_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        merged = cls._merge_with_defaults(loaded)
        with open(cfg_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(merged, f, sort_keys=False)
        return cls(raw=merged, path=cfg_path)

    def import_settings(self) -> ImportSettings:
        return ImportSettings.from_raw(self.raw)
