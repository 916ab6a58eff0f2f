import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from backend.config import DB_PATH

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """The backing store is unreachable or returned rows we cannot decode."""


@dataclass(frozen=True)
class Person:
    identifier: str
    full_name: str
    organization: str = ""
    area: str = ""
    role: str = ""
    active: bool = True

    def as_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "full_name": self.full_name,
            "organization": self.organization,
            "area": self.area,
            "role": self.role,
            "active": self.active,
        }


def connect_db(db_path: Path | str | None = None):
    conn = sqlite3.connect(str(db_path or DB_PATH), check_same_thread=False, timeout=10)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables(db_path: Path | str | None = None) -> None:
    path = Path(db_path or DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = connect_db(path)
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS personnel (
        identifier TEXT PRIMARY KEY,
        full_name TEXT NOT NULL,
        organization TEXT NOT NULL DEFAULT '',
        area TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT '',
        active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    # Spreadsheet-shaped storage: one header per sheet, rows keep insertion order.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS sheets (
        name TEXT PRIMARY KEY,
        header_json TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS sheet_rows (
        sheet TEXT NOT NULL,
        row_num INTEGER NOT NULL,           -- 1-based, header excluded
        cells_json TEXT NOT NULL,
        PRIMARY KEY (sheet, row_num),
        FOREIGN KEY (sheet) REFERENCES sheets(name) ON DELETE CASCADE
    )
    """)

    conn.commit()
    conn.close()


@contextmanager
def _storage_op(db_path: Path, action: str) -> Iterator[sqlite3.Connection]:
    try:
        conn = connect_db(db_path)
    except sqlite3.Error as exc:
        raise StorageError(f"{action}: cannot open store ({exc})") from exc
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        raise StorageError(f"{action}: {exc}") from exc
    finally:
        conn.close()


def _decode_cells(raw: str, *, table: str, row_num: int) -> list[Any]:
    try:
        cells = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Malformed row {row_num} in '{table}'") from exc
    if not isinstance(cells, list):
        raise StorageError(f"Malformed row {row_num} in '{table}'")
    return cells


# -----------------------------
# Tabular store
# -----------------------------
class SqliteTabularStore:
    """
    Sheet-like tables over sqlite.

    Rows are addressed by 1-based data row number (the header is not a row).
    Cell positions are never assumed here; callers resolve them through a
    column map built from `header()`.
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path or DB_PATH)

    def table_exists(self, table: str) -> bool:
        with _storage_op(self.db_path, "table_exists") as conn:
            row = conn.execute("SELECT 1 FROM sheets WHERE name = ?", (table,)).fetchone()
        return row is not None

    def create_table(self, table: str, header_row: list[str]) -> bool:
        """Create `table` with `header_row`. Returns False when it already exists."""
        with _storage_op(self.db_path, "create_table") as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO sheets (name, header_json) VALUES (?, ?)",
                (table, json.dumps(list(header_row))),
            )
            created = cur.rowcount == 1
        if created:
            logger.info("Created table '%s' with %d columns", table, len(header_row))
        return created

    def header(self, table: str) -> list[str]:
        with _storage_op(self.db_path, "header") as conn:
            row = conn.execute("SELECT header_json FROM sheets WHERE name = ?", (table,)).fetchone()
        if not row:
            raise StorageError(f"Table '{table}' not found")
        return [str(h) for h in _decode_cells(row[0], table=table, row_num=0)]

    def row_count(self, table: str) -> int:
        with _storage_op(self.db_path, "row_count") as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(row_num), 0) FROM sheet_rows WHERE sheet = ?",
                (table,),
            ).fetchone()
        return int(row[0] or 0)

    def read_all(self, table: str) -> list[list[Any]]:
        with _storage_op(self.db_path, "read_all") as conn:
            rows = conn.execute(
                "SELECT row_num, cells_json FROM sheet_rows WHERE sheet = ? ORDER BY row_num ASC",
                (table,),
            ).fetchall()
        return [_decode_cells(raw, table=table, row_num=num) for num, raw in rows]

    def read_range(self, table: str, from_row: int, row_count: int) -> list[list[Any]]:
        if row_count <= 0:
            return []
        start = max(1, int(from_row))
        with _storage_op(self.db_path, "read_range") as conn:
            rows = conn.execute(
                """
                SELECT row_num, cells_json
                FROM sheet_rows
                WHERE sheet = ? AND row_num >= ? AND row_num < ?
                ORDER BY row_num ASC
                """,
                (table, start, start + int(row_count)),
            ).fetchall()
        return [_decode_cells(raw, table=table, row_num=num) for num, raw in rows]

    def append_row(self, table: str, row: list[Any]) -> int:
        with _storage_op(self.db_path, "append_row") as conn:
            cur = conn.cursor()
            cur.execute("SELECT 1 FROM sheets WHERE name = ?", (table,))
            if not cur.fetchone():
                raise StorageError(f"Table '{table}' not found")
            cur.execute(
                "SELECT COALESCE(MAX(row_num), 0) + 1 FROM sheet_rows WHERE sheet = ?",
                (table,),
            )
            row_num = int(cur.fetchone()[0])
            cur.execute(
                "INSERT INTO sheet_rows (sheet, row_num, cells_json) VALUES (?, ?, ?)",
                (table, row_num, json.dumps(list(row))),
            )
        return row_num

    def update_cell(self, table: str, row: int, column: int, value: Any) -> None:
        with _storage_op(self.db_path, "update_cell") as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT cells_json FROM sheet_rows WHERE sheet = ? AND row_num = ?",
                (table, row),
            )
            found = cur.fetchone()
            if not found:
                raise StorageError(f"Row {row} not found in '{table}'")
            cells = _decode_cells(found[0], table=table, row_num=row)
            if column >= len(cells):
                cells.extend([""] * (column + 1 - len(cells)))
            cells[column] = value
            cur.execute(
                "UPDATE sheet_rows SET cells_json = ? WHERE sheet = ? AND row_num = ?",
                (json.dumps(cells), table, row),
            )

    def clear(self, table: str) -> int:
        """Delete every data row of `table`, keeping its header. Returns rows removed."""
        with _storage_op(self.db_path, "clear") as conn:
            cur = conn.execute("DELETE FROM sheet_rows WHERE sheet = ?", (table,))
            removed = cur.rowcount
        return int(removed or 0)


# -----------------------------
# Personnel store
# -----------------------------
def _person_from_row(row) -> Person:
    identifier, full_name, organization, area, role, active = row
    return Person(
        identifier=str(identifier),
        full_name=str(full_name or ""),
        organization=str(organization or ""),
        area=str(area or ""),
        role=str(role or ""),
        active=bool(active),
    )


class PersonnelStore:
    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path or DB_PATH)

    def read_all(self) -> list[Person]:
        with _storage_op(self.db_path, "personnel.read_all") as conn:
            rows = conn.execute("""
                SELECT identifier, full_name, organization, area, role, active
                FROM personnel
                ORDER BY full_name
            """).fetchall()
        return [_person_from_row(r) for r in rows]

    def get(self, identifier: str) -> Person | None:
        with _storage_op(self.db_path, "personnel.get") as conn:
            row = conn.execute("""
                SELECT identifier, full_name, organization, area, role, active
                FROM personnel
                WHERE identifier = ?
            """, (identifier,)).fetchone()
        return _person_from_row(row) if row else None

    def add_person(self, person: Person) -> Person:
        """Insert `person`. Raises sqlite3.IntegrityError on a duplicate identifier."""
        conn = connect_db(self.db_path)
        try:
            conn.execute("""
                INSERT INTO personnel (identifier, full_name, organization, area, role, active)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                person.identifier,
                person.full_name,
                person.organization,
                person.area,
                person.role,
                1 if person.active else 0,
            ))
            conn.commit()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StorageError(f"personnel.add_person: {exc}") from exc
        finally:
            conn.close()
        return person

    def update_person(self, identifier: str, **fields: Any) -> Person | None:
        allowed = {"full_name", "organization", "area", "role", "active"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if updates:
            if "active" in updates:
                updates["active"] = 1 if updates["active"] else 0
            assignments = ", ".join(f"{col} = ?" for col in updates)
            with _storage_op(self.db_path, "personnel.update_person") as conn:
                conn.execute(
                    f"""
                    UPDATE personnel
                    SET {assignments},
                        updated_at = CURRENT_TIMESTAMP
                    WHERE identifier = ?
                    """,
                    (*updates.values(), identifier),
                )
        return self.get(identifier)

    def set_active(self, identifier: str, active: bool) -> Person | None:
        return self.update_person(identifier, active=active)
