"""Value objects passed between the import pipeline stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass(frozen=True)
class FieldError:
    """A validation problem tied to a 1-based file row (0 for the file itself).

    ``field`` is one of ``file``, ``header`` or a column tag such as
    ``date`` or ``amount``.
    """

    row: int
    field: str
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ImportFileSuccess(Generic[T]):
    rows: List[T]
    total_rows: int
    unique_symbols: Optional[int] = None
    status: str = field(default=SUCCEEDED, init=False)


@dataclass
class ImportFileFailure:
    errors: List[FieldError]
    row_count_total: Optional[int] = None
    status: str = field(default=FAILED, init=False)

    @property
    def first_message(self) -> str:
        if self.errors:
            return self.errors[0].message
        return "Import failed."

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "errors": [error.as_dict() for error in self.errors],
        }
