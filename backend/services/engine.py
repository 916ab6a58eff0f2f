import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Literal, TypedDict

from fastapi import Request

from backend.config import (
    ARCHIVE_TABLE,
    DIRECTORY_TTL_SECONDS,
    DRILL_TABLE_PREFIX,
    LEDGER_TABLE,
    LOCK_TIMEOUT_SECONDS,
    PRESENCE_WINDOW,
    RECENT_WINDOW,
)
from backend.services.classifier import ACTIONS, Action, InputKind, classify
from backend.services.directory import DirectoryIndex
from backend.services.duration import duration, format_clock
from backend.services.export import CsvExportSink, ExportSink
from backend.services.presence import (
    InsideEntry,
    PresenceState,
    find_any_open_entry,
    resolve_open_entry,
    snapshot_inside,
)
from database.db import Person, PersonnelStore, SqliteTabularStore, StorageError, create_tables
from database.ledger import (
    DRILL_HEADER,
    STATUS_EXIT_RECORDED,
    STATUS_PERMITTED,
    STATUS_TEMPORARY,
    AccessEvent,
    ColumnMap,
    LedgerAdapter,
)

logger = logging.getLogger(__name__)

# Comments carrying one of these mark the row as a Temporary (non-standard) record.
TEMPORARY_MARKERS = ("VISITOR", "JUSTIFIED", "NO PRIOR ENTRY", "EVACUATION")

CLOSE_OUT_MODES = {"REAL", "SIMULACRO"}
_MODE_ALIASES = {"DRILL": "SIMULACRO"}
_ACTION_ALIASES = {
    "in": "check_in",
    "entry": "check_in",
    "checkin": "check_in",
    "out": "check_out",
    "exit": "check_out",
    "checkout": "check_out",
}
BUSY_RETRY_AFTER_SECONDS = 1

DecisionCode = Literal[
    "CHECK_IN_RECORDED",
    "CHECK_OUT_RECORDED",
    "DUPLICATE_CHECK_IN",
    "DUPLICATE_SUBMISSION",
    "VISITOR_REGISTRATION_REQUIRED",
    "JUSTIFICATION_REQUIRED",
    "VISITOR_RECORDED",
    "JUSTIFIED_EXIT_RECORDED",
    "COMMENT_ADDED",
    "NOT_FOUND",
    "INVALID_INPUT",
    "STORAGE_ERROR",
    "BUSY",
]


class EngineBusyError(RuntimeError):
    """The reconciliation lock could not be acquired in time."""


class CommitResult(TypedDict):
    row: int | None
    status: str
    duplicate: bool
    date: str
    check_in: str | None
    check_out: str | None
    duration: str | None


class ScanResult(TypedDict):
    success: bool
    logged: bool
    decision_code: DecisionCode
    reason: str
    identifier: str
    action: str | None
    person_known: bool
    name: str | None
    organization: str | None
    status: str | None
    requires_additional_input: bool
    input_kind: InputKind
    row: int | None
    date: str | None
    check_in: str | None
    check_out: str | None
    duration: str | None
    duplicate: bool
    open_entry: PresenceState | None
    retry_after_seconds: int | None


class CloseOutError(TypedDict):
    identifier: str | None
    reason: str


class CloseOutResult(TypedDict):
    success: bool
    mode: str | None
    message: str
    processed_count: int
    errors: list[CloseOutError]
    exit_time: str | None
    table: str | None
    export_path: str | None


def normalize_action(value: str | None) -> str | None:
    key = (value or "").strip().lower().replace("-", "_").replace(" ", "_")
    key = _ACTION_ALIASES.get(key, key)
    return key if key in ACTIONS else None


def has_temporary_marker(comment: str | None) -> bool:
    upper = (comment or "").upper()
    return any(marker in upper for marker in TEMPORARY_MARKERS)


def _same_row(candidate: list[str], existing: list[str]) -> bool:
    width = max(len(candidate), len(existing))
    padded_candidate = candidate + [""] * (width - len(candidate))
    padded_existing = existing + [""] * (width - len(existing))
    return all(str(a) == str(b) for a, b in zip(padded_candidate, padded_existing))


def _join_comment(existing: str, addition: str) -> str:
    existing = (existing or "").strip()
    return f"{existing} | {addition}" if existing else addition


def _build_scan_result(
    *,
    success: bool,
    decision_code: DecisionCode,
    message: str,
    identifier: str,
    action: str | None = None,
    person: Person | None = None,
    name: str | None = None,
    organization: str | None = None,
    status: str | None = None,
    input_kind: InputKind = "none",
    commit: CommitResult | None = None,
    open_entry: PresenceState | None = None,
    duplicate: bool = False,
    retry_after_seconds: int | None = None,
) -> ScanResult:
    return {
        "success": success,
        "logged": bool(commit) and not commit["duplicate"],
        "decision_code": decision_code,
        "reason": message,
        "identifier": identifier,
        "action": action,
        "person_known": person is not None,
        "name": name if name is not None else (person.full_name if person else None),
        "organization": organization if organization is not None else (person.organization if person else None),
        "status": commit["status"] if commit else status,
        "requires_additional_input": input_kind != "none",
        "input_kind": input_kind,
        "row": commit["row"] if commit else None,
        "date": commit["date"] if commit else None,
        "check_in": commit["check_in"] if commit else None,
        "check_out": commit["check_out"] if commit else None,
        "duration": commit["duration"] if commit else None,
        "duplicate": duplicate or bool(commit and commit["duplicate"]),
        "open_entry": open_entry,
        "retry_after_seconds": retry_after_seconds,
    }


def _invalid(identifier: str, message: str, action: str | None = None) -> ScanResult:
    return _build_scan_result(
        success=False,
        decision_code="INVALID_INPUT",
        message=message,
        identifier=identifier,
        action=action,
    )


def _close_out_result(
    *,
    success: bool,
    mode: str | None,
    message: str,
    processed_count: int = 0,
    errors: list[CloseOutError] | None = None,
    exit_time: str | None = None,
    table: str | None = None,
    export_path: str | None = None,
) -> CloseOutResult:
    return {
        "success": success,
        "mode": mode,
        "message": message,
        "processed_count": processed_count,
        "errors": errors or [],
        "exit_time": exit_time,
        "table": table,
        "export_path": export_path,
    }


class ReconciliationEngine:
    """
    Reconciles access scans against the append-only ledger.

    Every scan runs its read (presence resolution) and its write (commit)
    inside one engine-wide lock, acquired with a bounded wait. Snapshot reads
    do not take the lock.
    """

    def __init__(
        self,
        store: SqliteTabularStore,
        personnel: PersonnelStore,
        *,
        directory: DirectoryIndex | None = None,
        column_map: ColumnMap | None = None,
        ledger_table: str = LEDGER_TABLE,
        archive_table: str = ARCHIVE_TABLE,
        drill_table_prefix: str = DRILL_TABLE_PREFIX,
        presence_window: int = PRESENCE_WINDOW,
        recent_window: int = RECENT_WINDOW,
        lock: Any = None,
        lock_timeout: float = LOCK_TIMEOUT_SECONDS,
        export_sink: ExportSink | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.personnel = personnel
        self.directory = directory or DirectoryIndex(personnel, ttl_seconds=DIRECTORY_TTL_SECONDS)
        self.ledger = LedgerAdapter(store, ledger_table, column_map)
        self.archive = LedgerAdapter(store, archive_table)
        self.drill_table_prefix = drill_table_prefix
        self.presence_window = presence_window
        self.recent_window = recent_window
        self.lock_timeout = lock_timeout
        self.export_sink = export_sink
        self._lock = lock or threading.Lock()
        self._clock = clock

    def setup(self) -> None:
        self.ledger.ensure()
        self.archive.ensure()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise EngineBusyError("System busy, retry.")
        try:
            yield
        finally:
            self._lock.release()

    def _guarded(self, identifier: str, action: str | None, operation: Callable[[], ScanResult]) -> ScanResult:
        try:
            with self._exclusive():
                return operation()
        except EngineBusyError as exc:
            logger.warning("Lock timeout for %s (%s)", identifier, action)
            return _build_scan_result(
                success=False,
                decision_code="BUSY",
                message=str(exc),
                identifier=identifier,
                action=action,
                retry_after_seconds=BUSY_RETRY_AFTER_SECONDS,
            )
        except StorageError as exc:
            logger.error("Storage failure for %s (%s): %s", identifier, action, exc)
            return _build_scan_result(
                success=False,
                decision_code="STORAGE_ERROR",
                message=f"Storage unavailable: {exc}",
                identifier=identifier,
                action=action,
            )

    def _today(self, now: datetime) -> str:
        return now.strftime("%Y-%m-%d")

    def now(self) -> datetime:
        return self._clock()

    def _resolve_scan(self, identifier: str, today: str) -> tuple[str, Person | None, PresenceState]:
        """
        Directory hit and open entry for a scanned identifier.

        The open entry is looked up under the scanned identifier first. The
        directory's identifier is used only when it differs and the scanned one
        has nothing open; a loose directory match never takes over another
        identifier's open row.
        """
        person = self.directory.find(identifier)
        open_entry = resolve_open_entry(self.ledger, identifier, today, window=self.presence_window)
        if person is None or person.identifier == identifier:
            return identifier, person, open_entry
        if open_entry["found"]:
            return identifier, None, open_entry
        canonical = person.identifier
        return canonical, person, resolve_open_entry(self.ledger, canonical, today, window=self.presence_window)

    # -----------------------------
    # Write path
    # -----------------------------
    def commit(
        self,
        identifier: str,
        name: str | None,
        organization: str | None,
        check_in: Any,
        check_out: Any,
        action: Action,
        comment: str = "",
        *,
        open_row: int | None = None,
        temporary: bool = False,
    ) -> CommitResult:
        """
        Single write path for every scan outcome.

        A check-out against `open_row` fills that row's check-out and duration
        in place. Anything else appends one row, unless it is identical to the
        ledger's last row, in which case nothing is written and the result is
        flagged `duplicate`.
        """
        now = self._clock()
        in_text = format_clock(check_in) if check_in else ""
        out_text = format_clock(check_out) if check_out else ""
        comment = (comment or "").strip()
        is_temporary = temporary or has_temporary_marker(comment)

        if action == "check_out" and open_row is not None:
            elapsed = duration(in_text, out_text)
            self.ledger.update_field(open_row, "check_out", out_text)
            self.ledger.update_field(open_row, "duration", elapsed)
            if comment:
                current = self.ledger.read_event(open_row)
                existing = current.comment if current else ""
                self.ledger.update_field(open_row, "comment", _join_comment(existing, comment))
            logger.info("Check-out for %s closed row %d (%s)", identifier, open_row, elapsed)
            return {
                "row": open_row,
                "status": STATUS_EXIT_RECORDED,
                "duplicate": False,
                "date": self._today(now),
                "check_in": in_text or None,
                "check_out": out_text,
                "duration": elapsed,
            }

        if action == "check_in":
            status = STATUS_TEMPORARY if is_temporary else STATUS_PERMITTED
            elapsed = ""
        else:
            status = STATUS_TEMPORARY if (is_temporary or not in_text) else STATUS_EXIT_RECORDED
            elapsed = duration(in_text, out_text) if in_text and out_text else ""

        event = AccessEvent(
            date=self._today(now),
            identifier=identifier.strip(),
            name=(name or "").strip() or "N/A",
            status=status,
            check_in=in_text,
            check_out=out_text if action == "check_out" else "",
            duration=elapsed,
            organization=(organization or "").strip() or "N/A",
            comment=comment,
        )

        last = self.ledger.last_row_cells()
        if last is not None and _same_row(self.ledger.candidate_cells(event), last):
            logger.warning("Duplicate submission skipped for %s (%s)", identifier, action)
            return {
                "row": self.ledger.row_count(),
                "status": status,
                "duplicate": True,
                "date": event.date,
                "check_in": event.check_in or None,
                "check_out": event.check_out or None,
                "duration": event.duration or None,
            }

        row = self.ledger.append_event(event)
        logger.info("Recorded %s for %s at row %d (%s)", action, identifier, row, status)
        return {
            "row": row,
            "status": status,
            "duplicate": False,
            "date": event.date,
            "check_in": event.check_in or None,
            "check_out": event.check_out or None,
            "duration": event.duration or None,
        }

    # -----------------------------
    # Scans
    # -----------------------------
    def open_entry(self, identifier: str) -> PresenceState:
        today = self._today(self._clock())
        return resolve_open_entry(self.ledger, identifier, today, window=self.presence_window)

    def process_scan(self, identifier: str | None, action: str | None) -> ScanResult:
        clean_id = (identifier or "").strip()
        clean_action = normalize_action(action)
        if not clean_id:
            return _invalid(clean_id, "Identifier is required.", clean_action)
        if clean_action is None:
            return _invalid(clean_id, "Action must be check_in or check_out.")
        return self._guarded(clean_id, clean_action, lambda: self._process_scan_locked(clean_id, clean_action))

    def _process_scan_locked(self, identifier: str, action: Action) -> ScanResult:
        now = self._clock()
        identifier, person, open_entry = self._resolve_scan(identifier, self._today(now))
        decision = classify(person_known=person is not None, open_entry=open_entry["found"], action=action)
        outcome = decision["outcome"]

        if outcome == "COMMIT_CHECK_IN":
            commit = self.commit(identifier, person.full_name, person.organization, now, None, "check_in")
            duplicate = commit["duplicate"]
            return _build_scan_result(
                success=True,
                decision_code="DUPLICATE_SUBMISSION" if duplicate else "CHECK_IN_RECORDED",
                message="Duplicate submission ignored." if duplicate else f"Check-in recorded for {person.full_name}.",
                identifier=identifier,
                action=action,
                person=person,
                commit=commit,
            )

        if outcome == "REJECT_DUPLICATE_CHECK_IN":
            logger.info("Duplicate check-in rejected for %s (open since %s)", identifier, open_entry["check_in"])
            return _build_scan_result(
                success=True,
                decision_code="DUPLICATE_CHECK_IN",
                message=f"{person.full_name} already has an open entry since {open_entry['check_in']}.",
                identifier=identifier,
                action=action,
                person=person,
                open_entry=open_entry,
                duplicate=True,
            )

        if outcome == "COMMIT_CHECK_OUT":
            commit = self.commit(
                identifier,
                person.full_name if person else open_entry["name"],
                person.organization if person else open_entry["organization"],
                open_entry["check_in"],
                now,
                "check_out",
                open_row=open_entry["row"],
            )
            return _build_scan_result(
                success=True,
                decision_code="CHECK_OUT_RECORDED",
                message=f"Check-out recorded after {commit['duration']}.",
                identifier=identifier,
                action=action,
                person=person,
                name=person.full_name if person else open_entry["name"],
                organization=person.organization if person else open_entry["organization"],
                commit=commit,
                open_entry=open_entry,
            )

        if outcome == "NEED_JUSTIFICATION":
            logger.info("Check-out without entry for %s; justification required", identifier)
            return _build_scan_result(
                success=True,
                decision_code="JUSTIFICATION_REQUIRED",
                message=f"No open entry found for {person.full_name}. A justification is required.",
                identifier=identifier,
                action=action,
                person=person,
                status=decision["status"],
                input_kind=decision["input_kind"],
            )

        logger.info("Unknown identifier %s on %s; visitor registration required", identifier, action)
        return _build_scan_result(
            success=True,
            decision_code="VISITOR_REGISTRATION_REQUIRED",
            message="Person not identified. Complete the visitor registration.",
            identifier=identifier,
            action=action,
            status=decision["status"],
            input_kind=decision["input_kind"],
        )

    def submit_justification(self, identifier: str | None, comment: str | None) -> ScanResult:
        clean_id = (identifier or "").strip()
        clean_comment = (comment or "").strip()
        if not clean_id:
            return _invalid(clean_id, "Identifier is required.", "check_out")
        if not clean_comment:
            return _invalid(clean_id, "A justification comment is required.", "check_out")
        return self._guarded(
            clean_id,
            "check_out",
            lambda: self._submit_justification_locked(clean_id, clean_comment),
        )

    def _submit_justification_locked(self, identifier: str, comment: str) -> ScanResult:
        now = self._clock()
        identifier, person, open_entry = self._resolve_scan(identifier, self._today(now))
        marked = f"JUSTIFIED: {comment}"
        if open_entry["found"]:
            commit = self.commit(
                identifier,
                person.full_name if person else open_entry["name"],
                person.organization if person else open_entry["organization"],
                open_entry["check_in"],
                now,
                "check_out",
                marked,
                open_row=open_entry["row"],
            )
            return _build_scan_result(
                success=True,
                decision_code="CHECK_OUT_RECORDED",
                message=f"Open entry found; check-out recorded after {commit['duration']}.",
                identifier=identifier,
                action="check_out",
                person=person,
                name=person.full_name if person else open_entry["name"],
                organization=person.organization if person else open_entry["organization"],
                commit=commit,
                open_entry=open_entry,
            )

        if person is None:
            return _build_scan_result(
                success=False,
                decision_code="NOT_FOUND",
                message="Person not found in directory. Use visitor registration.",
                identifier=identifier,
                action="check_out",
                input_kind="visitor_registration",
            )
        commit = self.commit(identifier, person.full_name, person.organization, None, now, "check_out", marked, temporary=True)
        return _build_scan_result(
            success=True,
            decision_code="DUPLICATE_SUBMISSION" if commit["duplicate"] else "JUSTIFIED_EXIT_RECORDED",
            message="Check-out recorded with justification.",
            identifier=identifier,
            action="check_out",
            person=person,
            commit=commit,
        )

    def register_visitor(
        self,
        identifier: str | None,
        name: str | None,
        organization: str | None,
        reason: str | None,
        action: str | None,
    ) -> ScanResult:
        clean_id = (identifier or "").strip()
        clean_name = (name or "").strip()
        clean_action = normalize_action(action)
        if not clean_id or not clean_name:
            return _invalid(clean_id, "Visitor identifier and name are required.", clean_action)
        if clean_action is None:
            return _invalid(clean_id, "Action must be check_in or check_out.")
        return self._guarded(
            clean_id,
            clean_action,
            lambda: self._register_visitor_locked(
                clean_id,
                clean_name,
                (organization or "").strip(),
                (reason or "").strip(),
                clean_action,
            ),
        )

    def _register_visitor_locked(
        self,
        identifier: str,
        name: str,
        organization: str,
        reason: str,
        action: Action,
    ) -> ScanResult:
        now = self._clock()
        open_entry = resolve_open_entry(self.ledger, identifier, self._today(now), window=self.presence_window)

        if action == "check_in" and open_entry["found"]:
            return _build_scan_result(
                success=True,
                decision_code="DUPLICATE_CHECK_IN",
                message=f"{identifier} already has an open entry since {open_entry['check_in']}.",
                identifier=identifier,
                action=action,
                name=name,
                organization=organization,
                open_entry=open_entry,
                duplicate=True,
            )

        if action == "check_out" and open_entry["found"]:
            commit = self.commit(
                identifier,
                open_entry["name"],
                open_entry["organization"],
                open_entry["check_in"],
                now,
                "check_out",
                open_row=open_entry["row"],
            )
            return _build_scan_result(
                success=True,
                decision_code="CHECK_OUT_RECORDED",
                message=f"Check-out recorded after {commit['duration']}.",
                identifier=identifier,
                action=action,
                name=open_entry["name"],
                organization=open_entry["organization"],
                commit=commit,
                open_entry=open_entry,
            )

        comment = f"VISITOR: {name} | {organization or 'N/A'} | REASON: {reason or 'Not specified'}"
        commit = self.commit(
            identifier,
            name,
            organization or "Visitor",
            now if action == "check_in" else None,
            now if action == "check_out" else None,
            action,
            comment,
            temporary=True,
        )
        return _build_scan_result(
            success=True,
            decision_code="DUPLICATE_SUBMISSION" if commit["duplicate"] else "VISITOR_RECORDED",
            message=f"Visitor {action.replace('_', '-')} recorded.",
            identifier=identifier,
            action=action,
            name=name,
            organization=organization or "Visitor",
            commit=commit,
        )

    def add_comment(self, identifier: str | None, comment: str | None) -> ScanResult:
        clean_id = (identifier or "").strip()
        clean_comment = (comment or "").strip()
        if not clean_id or not clean_comment:
            return _invalid(clean_id, "Identifier and comment are required.")
        return self._guarded(clean_id, None, lambda: self._add_comment_locked(clean_id, clean_comment))

    def _add_comment_locked(self, identifier: str, comment: str) -> ScanResult:
        for event in reversed(self.ledger.read_all_events()):
            if event.identifier != identifier:
                continue
            updated = _join_comment(event.comment, f"COMMENT: {comment}")
            self.ledger.update_field(event.row, "comment", updated)
            logger.info("Comment added to row %d for %s", event.row, identifier)
            return _build_scan_result(
                success=True,
                decision_code="COMMENT_ADDED",
                message="Comment added.",
                identifier=identifier,
                name=event.name,
                organization=event.organization,
                status=event.status,
            )
        return _build_scan_result(
            success=False,
            decision_code="NOT_FOUND",
            message="No ledger row found for this identifier.",
            identifier=identifier,
        )

    # -----------------------------
    # Presence / evacuation
    # -----------------------------
    def snapshot_inside(self, *, window: int | None = None) -> list[InsideEntry]:
        return snapshot_inside(self.ledger, window=window, now=self._clock())

    def recent_inside(self) -> list[InsideEntry]:
        return self.snapshot_inside(window=self.recent_window)

    def close_out(self, identifiers: list[str] | None, mode: str | None) -> CloseOutResult:
        """
        Bulk check-out for evacuations.

        REAL closes each identifier's open entry in the main ledger; SIMULACRO
        writes every identifier to a fresh drill table and never touches the
        main ledger. A failure on one identifier never stops the batch.
        """
        roster: list[str] = []
        for raw in identifiers or []:
            clean = str(raw or "").strip()
            if clean and clean not in roster:
                roster.append(clean)
        mode_key = (mode or "").strip().upper()
        mode_key = _MODE_ALIASES.get(mode_key, mode_key)
        if not roster:
            return _close_out_result(success=False, mode=mode_key or None, message="No identifiers provided.")
        if mode_key not in CLOSE_OUT_MODES:
            return _close_out_result(success=False, mode=None, message="Mode must be REAL or SIMULACRO.")

        now = self._clock()
        if mode_key == "REAL":
            return self._close_out_real(roster, now)
        return self._close_out_drill(roster, now)

    def _close_out_real(self, roster: list[str], now: datetime) -> CloseOutResult:
        exit_time = now.strftime("%H:%M:%S")
        processed = 0
        errors: list[CloseOutError] = []
        for identifier in roster:
            try:
                with self._exclusive():
                    state = find_any_open_entry(self.ledger, identifier)
                    if not state["found"]:
                        errors.append({"identifier": identifier, "reason": f"No open entry found for {identifier}"})
                        continue
                    self.commit(
                        identifier,
                        state["name"],
                        state["organization"],
                        state["check_in"],
                        now,
                        "check_out",
                        open_row=state["row"],
                    )
                    processed += 1
            except EngineBusyError as exc:
                errors.append({"identifier": identifier, "reason": str(exc)})
            except StorageError as exc:
                logger.error("REAL close-out failed for %s: %s", identifier, exc)
                errors.append({"identifier": identifier, "reason": f"Storage failure: {exc}"})

        logger.info("REAL evacuation close-out: %d processed, %d errors", processed, len(errors))
        message = f"REAL evacuation recorded for {processed} people"
        if errors:
            message += f"; {len(errors)} errors"
        return _close_out_result(
            success=True,
            mode="REAL",
            message=message,
            processed_count=processed,
            errors=errors,
            exit_time=exit_time,
        )

    def _close_out_drill(self, roster: list[str], now: datetime) -> CloseOutResult:
        exit_time = now.strftime("%H:%M:%S")
        base = f"{self.drill_table_prefix}{now.strftime('%Y%m%d_%H%M%S')}"
        table = base
        try:
            # Every drill gets its own table, even when two start in the same second.
            suffix = 1
            while not self.store.create_table(table, list(DRILL_HEADER)):
                suffix += 1
                table = f"{base}_{suffix}"
        except StorageError as exc:
            logger.error("Cannot create drill table %s: %s", table, exc)
            return _close_out_result(
                success=False,
                mode="SIMULACRO",
                message=f"Could not create drill ledger: {exc}",
                errors=[{"identifier": None, "reason": str(exc)}],
                exit_time=exit_time,
                table=table,
            )

        try:
            seen_inside = {e["identifier"]: e for e in self.snapshot_inside()}
        except StorageError as exc:
            logger.warning("Drill roster names unavailable from ledger: %s", exc)
            seen_inside = {}

        processed = 0
        errors: list[CloseOutError] = []
        drill_rows: list[list[str]] = []
        for identifier in roster:
            try:
                person = self.directory.find(identifier)
                fallback = seen_inside.get(identifier)
                name = person.full_name if person else (fallback["name"] if fallback else "")
                organization = person.organization if person else (fallback["organization"] if fallback else "")
                row = [identifier, name, organization, exit_time, "SIMULACRO"]
                self.store.append_row(table, row)
                drill_rows.append(row)
                processed += 1
            except StorageError as exc:
                logger.error("Drill row failed for %s: %s", identifier, exc)
                errors.append({"identifier": identifier, "reason": f"Storage failure: {exc}"})

        export_path = None
        if self.export_sink is not None and drill_rows:
            try:
                export_path = self.export_sink.deliver(table, list(DRILL_HEADER), drill_rows)
            except OSError as exc:
                logger.error("Drill export failed for %s: %s", table, exc)
                errors.append({"identifier": None, "reason": f"Export failed: {exc}"})

        logger.info("Drill close-out into %s: %d processed, %d errors", table, processed, len(errors))
        return _close_out_result(
            success=True,
            mode="SIMULACRO",
            message=f"Drill recorded for {processed} people in {table}",
            processed_count=processed,
            errors=errors,
            exit_time=exit_time,
            table=table,
            export_path=export_path,
        )

    def export_snapshot(self) -> str:
        if self.export_sink is None:
            raise RuntimeError("No export sink configured.")
        now = self._clock()
        roster = self.snapshot_inside()
        rows = [[e["identifier"], e["name"], e["organization"], e["check_in"], e["time_inside"]] for e in roster]
        return self.export_sink.deliver(
            f"Inside_{now.strftime('%Y%m%d_%H%M%S')}",
            ["Identifier", "Name", "Organization", "Check In", "Time Inside"],
            rows,
        )

    # -----------------------------
    # Reporting / housekeeping
    # -----------------------------
    def statistics(self) -> dict[str, Any]:
        events = self.ledger.read_last(self.recent_window)
        entries = exits = exits_without_entry = 0
        seen_entry: set[str] = set()
        inside: dict[str, AccessEvent] = {}

        for event in events:
            if not event.identifier:
                continue
            if event.check_in:
                entries += 1
                seen_entry.add(event.identifier)
                if not event.check_out:
                    inside[event.identifier] = event
            if event.check_out:
                exits += 1
                justified = has_temporary_marker(event.comment) or event.status == STATUS_TEMPORARY
                if not event.check_in and event.identifier not in seen_entry and not justified:
                    exits_without_entry += 1
                inside.pop(event.identifier, None)

        recent = []
        for event in reversed(events[-10:]):
            if not (event.check_in or event.check_out):
                continue
            recent.append({
                "identifier": event.identifier,
                "name": event.name,
                "action": "check_out" if event.check_out else "check_in",
                "status": event.status,
                "time": event.check_out or event.check_in,
                "duration": event.duration or (duration(event.check_in, event.check_out) if event.is_closed else ""),
            })

        return {
            "entries": entries,
            "exits": exits,
            "valid_exits": exits - exits_without_entry,
            "exits_without_entry": exits_without_entry,
            "inside": len(inside),
            "recent_records": recent,
            "rows_scanned": len(events),
            "timestamp": self.now().isoformat(timespec="seconds"),
        }

    def history(self, identifier: str | None = None, *, page: int = 1, page_size: int = 100) -> dict[str, Any]:
        wanted = (identifier or "").strip()
        self.archive.ensure()
        events = self.archive.read_all_events() + self.ledger.read_all_events()
        if wanted:
            events = [e for e in events if e.identifier == wanted]
        events.reverse()

        page_size = max(1, int(page_size))
        total = len(events)
        total_pages = max(1, (total + page_size - 1) // page_size)
        page = min(max(1, int(page)), total_pages)
        start = (page - 1) * page_size
        return {
            "identifier": wanted or None,
            "rows": [e.as_dict() for e in events[start:start + page_size]],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": total_pages,
        }

    def close_shift(self) -> dict[str, Any]:
        """Copy the active ledger verbatim into the archive, then clear it."""
        try:
            with self._exclusive():
                rows = self.store.read_all(self.ledger.table)
                if not rows:
                    return {"success": False, "archived": 0, "message": "No records to archive."}
                self.archive.ensure()
                for row in rows:
                    self.store.append_row(self.archive.table, row)
                self.store.clear(self.ledger.table)
        except EngineBusyError as exc:
            return {"success": False, "archived": 0, "message": str(exc), "retry_after_seconds": BUSY_RETRY_AFTER_SECONDS}
        except StorageError as exc:
            logger.error("Shift close failed: %s", exc)
            return {"success": False, "archived": 0, "message": f"Storage unavailable: {exc}"}

        logger.info("Shift closed: %d rows archived to %s", len(rows), self.archive.table)
        return {"success": True, "archived": len(rows), "message": f"{len(rows)} records archived."}


def build_engine(db_path: Path | str | None = None, exports_dir: Path | str | None = None) -> ReconciliationEngine:
    create_tables(db_path)
    engine = ReconciliationEngine(
        SqliteTabularStore(db_path),
        PersonnelStore(db_path),
        export_sink=CsvExportSink(exports_dir),
    )
    engine.setup()
    return engine


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine
