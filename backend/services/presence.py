"""
Who is inside, derived from the access ledger.

Nothing here is cached: every call re-reads the ledger. Storage errors are
allowed to propagate so that a broken store is never mistaken for "no open
entry".
"""
from datetime import datetime
from typing import TypedDict

from backend.services.duration import elapsed_seconds, format_seconds
from database.ledger import AccessEvent, LedgerAdapter


class PresenceState(TypedDict):
    found: bool
    row: int | None
    check_in: str | None
    date: str | None
    name: str | None
    organization: str | None


class InsideEntry(TypedDict):
    identifier: str
    name: str
    organization: str
    date: str
    check_in: str
    row: int | None
    time_inside: str


NOT_FOUND: PresenceState = {
    "found": False,
    "row": None,
    "check_in": None,
    "date": None,
    "name": None,
    "organization": None,
}


def _state_from_event(event: AccessEvent) -> PresenceState:
    return {
        "found": True,
        "row": event.row,
        "check_in": event.check_in,
        "date": event.date,
        "name": event.name,
        "organization": event.organization,
    }


def resolve_open_entry(
    ledger: LedgerAdapter,
    identifier: str,
    as_of_date: str,
    *,
    window: int,
) -> PresenceState:
    """
    Most recent open entry for `identifier` dated `as_of_date`.

    Only the last `window` rows are read. Rows from other dates are skipped,
    so an entry left open past midnight is not found here.
    """
    wanted = identifier.strip()
    if not wanted:
        return dict(NOT_FOUND)
    for event in reversed(ledger.read_last(window)):
        if event.date != as_of_date:
            continue
        if event.identifier == wanted and event.is_open:
            return _state_from_event(event)
    return dict(NOT_FOUND)


def find_any_open_entry(ledger: LedgerAdapter, identifier: str) -> PresenceState:
    """Most recent open entry for `identifier` over the whole ledger, any date."""
    wanted = identifier.strip()
    for event in reversed(ledger.read_all_events()):
        if event.identifier == wanted and event.is_open:
            return _state_from_event(event)
    return dict(NOT_FOUND)


def replay_inside(events: list[AccessEvent]) -> dict[str, AccessEvent]:
    """
    Replay events oldest first. An open row marks the identifier inside; any
    later row carrying a check-out takes it out again.
    """
    inside: dict[str, AccessEvent] = {}
    for event in events:
        if not event.identifier:
            continue
        if event.check_out:
            inside.pop(event.identifier, None)
        elif event.check_in:
            inside[event.identifier] = event
    return inside


def snapshot_inside(
    ledger: LedgerAdapter,
    *,
    window: int | None = None,
    now: datetime | None = None,
) -> list[InsideEntry]:
    """
    Everyone currently inside. `window=None` replays the full ledger.

    Taken without the engine lock: the result is advisory and may miss a scan
    committed while it was being read.
    """
    marker = now or datetime.now()
    inside = replay_inside(ledger.read_window(window))
    roster: list[InsideEntry] = []
    for identifier, event in inside.items():
        seconds = elapsed_seconds(event.check_in, marker)
        roster.append({
            "identifier": identifier,
            "name": event.name,
            "organization": event.organization,
            "date": event.date,
            "check_in": event.check_in,
            "row": event.row,
            "time_inside": format_seconds(seconds) if seconds is not None else "0:00:00",
        })
    return roster
