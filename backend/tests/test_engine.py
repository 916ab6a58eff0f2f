import csv
import threading
from pathlib import Path

from database.db import SqliteTabularStore, StorageError
from database.ledger import DRILL_HEADER, AccessEvent


class FlakyStore(SqliteTabularStore):
    """Tabular store that can be told to fail reads, specific appends or row updates."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.fail_reads = False
        self.fail_append_for: set[str] = set()
        self.fail_update_rows: set[int] = set()

    def row_count(self, table):
        if self.fail_reads:
            raise StorageError("row_count: disk I/O error")
        return super().row_count(table)

    def append_row(self, table, row):
        if row and str(row[0]) in self.fail_append_for:
            raise StorageError("append_row: disk I/O error")
        return super().append_row(table, row)

    def update_cell(self, table, row, column, value):
        if row in self.fail_update_rows:
            raise StorageError("update_cell: disk I/O error")
        return super().update_cell(table, row, column, value)


def _rows(engine):
    return engine.ledger.read_all_events()


def test_known_check_in_appends_permitted_row(engine):
    result = engine.process_scan("1001", "check_in")

    assert result["success"] is True
    assert result["logged"] is True
    assert result["decision_code"] == "CHECK_IN_RECORDED"
    assert result["row"] == 1
    assert result["status"] == "Permitted"

    rows = _rows(engine)
    assert len(rows) == 1
    assert rows[0].identifier == "1001"
    assert rows[0].name == "Ana Torres"
    assert rows[0].date == "2026-03-02"
    assert rows[0].check_in == "08:00:00"
    assert rows[0].is_open


def test_check_out_closes_open_row_in_place(engine, clock):
    engine.process_scan("1001", "check_in")
    clock.advance(hours=1, minutes=30)

    result = engine.process_scan("1001", "check_out")

    assert result["decision_code"] == "CHECK_OUT_RECORDED"
    assert result["status"] == "Exit Recorded"
    assert result["row"] == 1
    assert result["duration"] == "1:30:00"

    rows = _rows(engine)
    assert len(rows) == 1
    assert rows[0].check_out == "09:30:00"
    assert rows[0].duration == "1:30:00"
    assert rows[0].status == "Permitted"


def test_duplicate_check_in_is_rejected_without_write(engine, clock):
    engine.process_scan("1001", "check_in")
    clock.advance(minutes=5)

    result = engine.process_scan("1001", "check_in")

    assert result["success"] is True
    assert result["logged"] is False
    assert result["decision_code"] == "DUPLICATE_CHECK_IN"
    assert result["duplicate"] is True
    assert result["open_entry"]["row"] == 1
    assert result["open_entry"]["check_in"] == "08:00:00"
    assert len(_rows(engine)) == 1
    assert [e["identifier"] for e in engine.snapshot_inside()] == ["1001"]


def test_known_check_out_without_entry_needs_justification(engine):
    result = engine.process_scan("1002", "check_out")

    assert result["decision_code"] == "JUSTIFICATION_REQUIRED"
    assert result["requires_additional_input"] is True
    assert result["input_kind"] == "justification"
    assert result["status"] == "Temporary"
    assert _rows(engine) == []


def test_unknown_check_in_needs_visitor_registration(engine):
    result = engine.process_scan("9999", "check_in")

    assert result["person_known"] is False
    assert result["decision_code"] == "VISITOR_REGISTRATION_REQUIRED"
    assert result["input_kind"] == "visitor_registration"
    assert _rows(engine) == []


def test_invalid_input_is_rejected(engine):
    assert engine.process_scan("   ", "check_in")["decision_code"] == "INVALID_INPUT"
    assert engine.process_scan("1001", "teleport")["decision_code"] == "INVALID_INPUT"
    assert _rows(engine) == []


def test_action_aliases_are_accepted(engine):
    assert engine.process_scan("1001", "IN")["decision_code"] == "CHECK_IN_RECORDED"


def test_entry_open_from_previous_day_is_not_found(engine, clock):
    engine.process_scan("1001", "check_in")
    clock.advance(days=1)

    result = engine.process_scan("1001", "check_out")

    assert result["decision_code"] == "JUSTIFICATION_REQUIRED"
    assert _rows(engine)[0].is_open


def test_open_entry_outside_window_is_not_found(make_engine, clock):
    engine = make_engine(presence_window=3)
    engine.process_scan("1001", "check_in")
    for identifier in ("1002", "2001"):
        clock.advance(minutes=1)
        engine.process_scan(identifier, "check_in")
    clock.advance(minutes=1)
    engine.commit("2001", "Marta Ruiz", "Contractor Co", clock.now, None, "check_in", "manual entry")

    result = engine.process_scan("1001", "check_out")

    assert result["decision_code"] == "JUSTIFICATION_REQUIRED"


def test_identical_commit_is_flagged_duplicate(engine, clock):
    first = engine.commit("1001", "Ana Torres", "Acme Mining", clock.now, None, "check_in")
    second = engine.commit("1001", "Ana Torres", "Acme Mining", clock.now, None, "check_in")

    assert first["duplicate"] is False
    assert second["duplicate"] is True
    assert second["row"] == first["row"]
    assert len(_rows(engine)) == 1


def test_status_marker_makes_row_temporary(engine, clock):
    result = engine.commit("1001", "Ana Torres", "Acme Mining", clock.now, None, "check_in", "evacuation drill return")
    assert result["status"] == "Temporary"


def test_check_out_without_check_in_is_temporary(engine, clock):
    result = engine.commit("1001", "Ana Torres", "Acme Mining", None, clock.now, "check_out")

    assert result["status"] == "Temporary"
    assert _rows(engine)[0].check_in == ""


def test_lock_timeout_returns_busy_without_write(make_engine):
    lock = threading.Lock()
    engine = make_engine(lock=lock, lock_timeout=0.05)
    lock.acquire()
    try:
        result = engine.process_scan("1001", "check_in")
    finally:
        lock.release()

    assert result["success"] is False
    assert result["decision_code"] == "BUSY"
    assert result["retry_after_seconds"] == 1
    assert _rows(engine) == []


def test_storage_failure_is_not_reported_as_no_entry(make_engine, db_path):
    store = FlakyStore(db_path)
    engine = make_engine(store=store)
    engine.process_scan("1001", "check_in")
    store.fail_reads = True

    result = engine.process_scan("1001", "check_out")

    assert result["success"] is False
    assert result["decision_code"] == "STORAGE_ERROR"
    assert result["requires_additional_input"] is False


def test_lock_is_released_after_storage_failure(make_engine, db_path):
    store = FlakyStore(db_path)
    engine = make_engine(store=store, lock_timeout=0.05)
    store.fail_reads = True
    engine.process_scan("1001", "check_in")
    store.fail_reads = False

    assert engine.process_scan("1001", "check_in")["decision_code"] == "CHECK_IN_RECORDED"


def test_snapshot_replays_in_out_in(engine, clock):
    engine.process_scan("1001", "check_in")
    clock.advance(minutes=10)
    engine.process_scan("1001", "check_out")
    clock.advance(minutes=10)
    engine.process_scan("1001", "check_in")
    clock.advance(minutes=45)

    inside = engine.snapshot_inside()

    assert len(inside) == 1
    assert inside[0]["identifier"] == "1001"
    assert inside[0]["row"] == 2
    assert inside[0]["check_in"] == "08:20:00"
    assert inside[0]["time_inside"] == "0:45:00"


def test_justification_writes_temporary_exit(engine):
    result = engine.submit_justification("1002", "badge reader offline at entry")

    assert result["decision_code"] == "JUSTIFIED_EXIT_RECORDED"
    assert result["status"] == "Temporary"
    row = _rows(engine)[0]
    assert row.check_in == ""
    assert row.check_out == "08:00:00"
    assert row.comment == "JUSTIFIED: badge reader offline at entry"


def test_justification_closes_entry_that_appeared(engine, clock):
    engine.process_scan("1002", "check_in")
    clock.advance(hours=2)

    result = engine.submit_justification("1002", "late review")

    assert result["decision_code"] == "CHECK_OUT_RECORDED"
    rows = _rows(engine)
    assert len(rows) == 1
    assert rows[0].duration == "2:00:00"
    assert rows[0].comment == "JUSTIFIED: late review"


def test_justification_for_unknown_person(engine):
    result = engine.submit_justification("9999", "no idea")
    assert result["decision_code"] == "NOT_FOUND"
    assert _rows(engine) == []


def test_visitor_check_in_then_scan_out(engine, clock):
    visit = engine.register_visitor("V-77", "Pedro Gil", "Audit Ltd", "Inspection", "check_in")
    assert visit["decision_code"] == "VISITOR_RECORDED"
    assert visit["status"] == "Temporary"
    assert _rows(engine)[0].comment == "VISITOR: Pedro Gil | Audit Ltd | REASON: Inspection"

    clock.advance(minutes=40)
    result = engine.process_scan("V-77", "check_out")

    assert result["person_known"] is False
    assert result["decision_code"] == "CHECK_OUT_RECORDED"
    assert result["duration"] == "0:40:00"
    assert len(_rows(engine)) == 1


def test_visitor_id_contained_in_known_id_checks_out_own_row(engine, clock):
    engine.process_scan("1001", "check_in")
    engine.register_visitor("100", "Pedro Gil", "Audit Ltd", "Inspection", "check_in")
    clock.advance(minutes=40)

    result = engine.process_scan("100", "check_out")

    assert result["decision_code"] == "CHECK_OUT_RECORDED"
    assert result["identifier"] == "100"
    assert result["name"] == "Pedro Gil"
    assert result["row"] == 2
    assert result["duration"] == "0:40:00"
    assert [e["identifier"] for e in engine.snapshot_inside()] == ["1001"]


def test_justification_for_loose_match_closes_scanned_row(engine, clock):
    engine.register_visitor("100", "Pedro Gil", "Audit Ltd", "Inspection", "check_in")
    clock.advance(minutes=15)

    result = engine.submit_justification("100", "left with escort")

    assert result["decision_code"] == "CHECK_OUT_RECORDED"
    assert result["identifier"] == "100"
    assert engine.snapshot_inside() == []
    assert len(_rows(engine)) == 1


def test_visitor_registration_requires_name(engine):
    result = engine.register_visitor("V-77", "  ", "", "", "check_in")
    assert result["decision_code"] == "INVALID_INPUT"


def test_add_comment_appends_to_latest_row(engine, clock):
    engine.process_scan("1001", "check_in")
    first = engine.add_comment("1001", "carrying tools")
    second = engine.add_comment("1001", "escorted")

    assert first["decision_code"] == "COMMENT_ADDED"
    assert second["success"] is True
    assert _rows(engine)[0].comment == "COMMENT: carrying tools | COMMENT: escorted"
    assert engine.add_comment("2001", "missing")["decision_code"] == "NOT_FOUND"


def test_real_close_out_reports_per_identifier_errors(engine, clock):
    engine.process_scan("1001", "check_in")
    engine.process_scan("2001", "check_in")
    clock.advance(hours=3)

    result = engine.close_out(["1001", "2001", "1002"], "REAL")

    assert result["success"] is True
    assert result["mode"] == "REAL"
    assert result["processed_count"] == 2
    assert [e["identifier"] for e in result["errors"]] == ["1002"]
    assert engine.snapshot_inside() == []
    assert {row.duration for row in _rows(engine)} == {"3:00:00"}


def test_real_close_out_finds_entries_from_earlier_days(engine, clock):
    engine.process_scan("1001", "check_in")
    clock.advance(days=1, hours=-1)

    result = engine.close_out(["1001"], "REAL")

    assert result["processed_count"] == 1
    assert _rows(engine)[0].duration == "23:00:00"


def test_drill_close_out_never_touches_ledger(engine, clock, tmp_path):
    engine.process_scan("1001", "check_in")
    engine.process_scan("1002", "check_in")
    before = engine.ledger.row_count()

    result = engine.close_out(["1001", "1002", "V-1"], "simulacro")

    assert result["success"] is True
    assert result["mode"] == "SIMULACRO"
    assert result["processed_count"] == 3
    assert result["table"] == "Drill_20260302_080000"
    assert engine.ledger.row_count() == before
    assert len(engine.snapshot_inside()) == 2

    drill_rows = engine.store.read_all(result["table"])
    assert engine.store.header(result["table"]) == DRILL_HEADER
    assert len(drill_rows) == 3
    assert drill_rows[0] == ["1001", "Ana Torres", "Acme Mining", "08:00:00", "SIMULACRO"]

    exported = Path(result["export_path"])
    assert exported.parent == tmp_path / "exports"
    with open(exported, newline="", encoding="utf-8") as f:
        assert len(list(csv.reader(f))) == 4


def test_drill_close_out_continues_past_failed_item(make_engine, db_path):
    store = FlakyStore(db_path)
    store.fail_append_for = {"1002"}
    engine = make_engine(store=store)

    result = engine.close_out(["1001", "1002", "2001"], "SIMULACRO")

    assert result["success"] is True
    assert result["processed_count"] == 2
    assert result["errors"][0]["identifier"] == "1002"


def test_drills_in_same_second_get_separate_tables(engine):
    first = engine.close_out(["1001", "1002"], "SIMULACRO")
    second = engine.close_out(["2001"], "SIMULACRO")

    assert first["table"] == "Drill_20260302_080000"
    assert second["table"] == "Drill_20260302_080000_2"
    assert len(engine.store.read_all(first["table"])) == 2
    assert len(engine.store.read_all(second["table"])) == 1


def test_real_close_out_continues_past_storage_failure(make_engine, db_path, clock):
    store = FlakyStore(db_path)
    engine = make_engine(store=store)
    engine.process_scan("1001", "check_in")
    engine.process_scan("2001", "check_in")
    clock.advance(hours=1)
    store.fail_update_rows = {1}

    result = engine.close_out(["1001", "2001"], "REAL")

    assert result["success"] is True
    assert result["processed_count"] == 1
    assert len(result["errors"]) == 1
    assert result["errors"][0]["identifier"] == "1001"
    assert [e["identifier"] for e in engine.snapshot_inside()] == ["1001"]
    assert _rows(engine)[1].duration == "1:00:00"


def test_close_out_rejects_bad_input(engine):
    assert engine.close_out([], "REAL")["success"] is False
    assert engine.close_out(["1001"], "PANIC")["success"] is False


def test_close_shift_archives_and_clears(engine, clock):
    engine.process_scan("1001", "check_in")
    clock.advance(hours=1)
    engine.process_scan("1001", "check_out")
    engine.process_scan("2001", "check_in")

    result = engine.close_shift()

    assert result["success"] is True
    assert result["archived"] == 2
    assert engine.ledger.row_count() == 0
    assert engine.archive.row_count() == 2
    assert engine.close_shift()["success"] is False

    history = engine.history("1001")
    assert history["total"] == 1
    assert history["rows"][0]["duration"] == "1:00:00"


def test_history_is_most_recent_first_and_paginated(engine, clock):
    for _ in range(3):
        engine.process_scan("1001", "check_in")
        clock.advance(minutes=5)
        engine.process_scan("1001", "check_out")
        clock.advance(minutes=5)

    page = engine.history("1001", page=1, page_size=2)

    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert [r["row"] for r in page["rows"]] == [3, 2]


def test_statistics_counts_recent_activity(engine, clock):
    engine.process_scan("1001", "check_in")
    clock.advance(minutes=30)
    engine.process_scan("1001", "check_out")
    engine.process_scan("1002", "check_in")
    engine.commit("2001", "Marta Ruiz", "Contractor Co", None, clock.now, "check_out")
    engine.ledger.append_event(AccessEvent(date="2026-03-02", identifier="3003", status="Exit Recorded", check_out="08:31:00"))

    stats = engine.statistics()

    assert stats["entries"] == 2
    assert stats["exits"] == 3
    assert stats["inside"] == 1
    assert stats["exits_without_entry"] == 1
    assert stats["valid_exits"] == 2
    assert stats["recent_records"][0]["identifier"] == "3003"
