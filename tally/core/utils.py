from typing import Iterator, List, Sequence, TypeVar

T = TypeVar("T")


def coerce_bool(value, default: bool = True) -> bool:
    """Best-effort conversion of truthy configuration values to booleans."""

    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False
        return default
    if value is None:
        return default
    try:
        return bool(int(value))
    except (TypeError, ValueError):
        return bool(value)


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of ``items`` holding at most ``size`` entries."""

    if size < 1:
        raise ValueError("size must be a positive integer")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
