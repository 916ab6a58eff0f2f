from dataclasses import dataclass, field, replace
from typing import Any, Literal

from database.db import SqliteTabularStore, StorageError

LedgerField = Literal[
    "date",
    "identifier",
    "name",
    "status",
    "check_in",
    "check_out",
    "duration",
    "organization",
    "comment",
]

# Canonical header, in the order new ledgers are created with.
LEDGER_HEADER: dict[LedgerField, str] = {
    "date": "Date",
    "identifier": "Identifier",
    "name": "Name",
    "status": "Access Status",
    "check_in": "Check In",
    "check_out": "Check Out",
    "duration": "Duration",
    "organization": "Organization",
    "comment": "Comment",
}

DRILL_HEADER = ["Identifier", "Name", "Organization", "Exit Time", "Event Type"]

STATUS_PERMITTED = "Permitted"
STATUS_TEMPORARY = "Temporary"
STATUS_DENIED = "Denied"
STATUS_EXIT_RECORDED = "Exit Recorded"


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class AccessEvent:
    date: str
    identifier: str
    name: str = ""
    status: str = ""
    check_in: str = ""
    check_out: str = ""
    duration: str = ""
    organization: str = ""
    comment: str = ""
    row: int | None = field(default=None, compare=False)

    @property
    def is_open(self) -> bool:
        return bool(self.check_in) and not self.check_out

    @property
    def is_closed(self) -> bool:
        return bool(self.check_in) and bool(self.check_out)

    def with_row(self, row: int) -> "AccessEvent":
        return replace(self, row=row)

    def as_dict(self) -> dict[str, Any]:
        return {
            "row": self.row,
            "date": self.date,
            "identifier": self.identifier,
            "name": self.name,
            "status": self.status,
            "check_in": self.check_in or None,
            "check_out": self.check_out or None,
            "duration": self.duration or None,
            "organization": self.organization,
            "comment": self.comment,
        }


@dataclass(frozen=True)
class ColumnMap:
    """Resolved field name -> cell index for one ledger table."""

    indices: dict[str, int]
    width: int

    @classmethod
    def from_header(cls, header: list[str]) -> "ColumnMap":
        normalized = [str(h).strip().lower() for h in header]
        indices: dict[str, int] = {}
        missing: list[str] = []
        for ledger_field, label in LEDGER_HEADER.items():
            try:
                indices[ledger_field] = normalized.index(label.lower())
            except ValueError:
                missing.append(label)
        if missing:
            raise StorageError(f"Ledger header is missing columns: {', '.join(missing)}")
        return cls(indices=indices, width=max(len(header), max(indices.values()) + 1))

    def index(self, ledger_field: LedgerField) -> int:
        return self.indices[ledger_field]

    def to_row(self, event: AccessEvent) -> list[str]:
        row = [""] * self.width
        for ledger_field in LEDGER_HEADER:
            row[self.indices[ledger_field]] = _cell_text(getattr(event, ledger_field))
        return row

    def to_event(self, cells: list[Any], row: int | None = None) -> AccessEvent:
        def cell(ledger_field: str) -> str:
            idx = self.indices[ledger_field]
            return _cell_text(cells[idx]) if idx < len(cells) else ""

        return AccessEvent(
            date=cell("date"),
            identifier=cell("identifier"),
            name=cell("name"),
            status=cell("status"),
            check_in=cell("check_in"),
            check_out=cell("check_out"),
            duration=cell("duration"),
            organization=cell("organization"),
            comment=cell("comment"),
            row=row,
        )


class LedgerAdapter:
    """
    Append-only view of one access ledger table.

    Translation between raw cells and `AccessEvent` happens only here, so the
    reconciliation services never see cell positions.
    """

    def __init__(
        self,
        store: SqliteTabularStore,
        table: str,
        column_map: ColumnMap | None = None,
    ):
        self.store = store
        self.table = table
        self._column_map = column_map

    def ensure(self) -> None:
        if not self.store.table_exists(self.table):
            self.store.create_table(self.table, list(LEDGER_HEADER.values()))

    @property
    def columns(self) -> ColumnMap:
        if self._column_map is None:
            self._column_map = ColumnMap.from_header(self.store.header(self.table))
        return self._column_map

    def row_count(self) -> int:
        return self.store.row_count(self.table)

    def append_event(self, event: AccessEvent) -> int:
        return self.store.append_row(self.table, self.columns.to_row(event))

    def candidate_cells(self, event: AccessEvent) -> list[str]:
        return self.columns.to_row(event)

    def last_row_cells(self) -> list[str] | None:
        total = self.row_count()
        if total == 0:
            return None
        rows = self.store.read_range(self.table, total, 1)
        if not rows:
            return None
        return [_cell_text(c) for c in rows[0]]

    def read_last(self, count: int) -> list[AccessEvent]:
        """The most recent `count` rows, oldest first."""
        total = self.row_count()
        if total == 0 or count <= 0:
            return []
        start = max(1, total - count + 1)
        cells = self.store.read_range(self.table, start, total - start + 1)
        return [self.columns.to_event(row, start + i) for i, row in enumerate(cells)]

    def read_event(self, row: int) -> AccessEvent | None:
        cells = self.store.read_range(self.table, row, 1)
        return self.columns.to_event(cells[0], row) if cells else None

    def read_all_events(self) -> list[AccessEvent]:
        return [self.columns.to_event(row, i + 1) for i, row in enumerate(self.store.read_all(self.table))]

    def read_window(self, window: int | None) -> list[AccessEvent]:
        return self.read_all_events() if window is None else self.read_last(window)

    def update_field(self, row: int, ledger_field: LedgerField, value: Any) -> None:
        self.store.update_cell(self.table, row, self.columns.index(ledger_field), _cell_text(value))
