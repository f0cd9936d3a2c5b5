from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class FieldEquals:
    column: str
    value: str


@dataclass(frozen=True, slots=True)
class AllOf:
    clauses: tuple[RowFilter, ...]


RowFilter = FieldEquals | AllOf


def all_of(*clauses: RowFilter | None) -> RowFilter | None:
    """Conjoin the non-empty clauses; a single clause is returned as-is."""

    present = tuple(clause for clause in clauses if clause is not None)
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return AllOf(present)


@dataclass(frozen=True, slots=True)
class SortSpec:
    column: str
    descending: bool = False


@dataclass(slots=True)
class Row:
    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    created_time: str | None = None

    def get(self, column: str, default: Any = None) -> Any:
        value = self.fields.get(column)
        if value is None or value == "":
            return default
        return value


class RowStore(Protocol):
    """Minimal table-of-rows capability the repositories depend on.

    Implementations raise ``StorageUnavailableError`` on backend failure and
    return ``None`` from ``find`` when the id does not exist.
    """

    backend_name: str

    def select(self, table: str, *, row_filter: RowFilter | None = None, sort: SortSpec | None = None) -> list[Row]:
        ...

    def find(self, table: str, row_id: str) -> Row | None:
        ...

    def create(self, table: str, fields: dict[str, Any]) -> Row:
        ...

    def update(self, table: str, row_id: str, fields: dict[str, Any]) -> Row:
        ...
