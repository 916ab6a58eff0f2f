import logging
import re
import threading
import time
from dataclasses import dataclass

from database.db import Person, PersonnelStore

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"[^\d]")


def normalize_identifier(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


@dataclass(frozen=True)
class _Entry:
    person: Person
    normalized: str
    search_blob: str


class DirectoryIndex:
    """
    In-memory lookup of known personnel.

    `rebuild()` swaps in a complete new index; lookups never see a partially
    built one. Concurrent rebuilds are harmless: the last one wins.
    """

    def __init__(self, store: PersonnelStore, *, ttl_seconds: float = 600, clock=time.monotonic):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._built_at: float | None = None
        self._swap_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_stale(self) -> bool:
        if self._built_at is None:
            return True
        return self._clock() - self._built_at > self.ttl_seconds

    def invalidate(self) -> None:
        with self._swap_lock:
            self._entries = {}
            self._built_at = None

    def rebuild(self) -> int:
        entries: dict[str, _Entry] = {}
        for person in self.store.read_all():
            identifier = person.identifier.strip()
            if not identifier or not person.active:
                continue
            entries[identifier] = _Entry(
                person=person,
                normalized=normalize_identifier(identifier),
                search_blob=f"{identifier} {person.full_name} {person.organization}".lower(),
            )
        with self._swap_lock:
            self._entries = entries
            self._built_at = self._clock()
        logger.info("Directory index rebuilt with %d people", len(entries))
        return len(entries)

    def lookup(self, text: str) -> Person | None:
        query = (text or "").strip()
        if not query:
            return None
        entries = self._entries

        exact = entries.get(query)
        if exact:
            return exact.person

        normalized = normalize_identifier(query)
        if normalized:
            for entry in entries.values():
                if entry.normalized == normalized:
                    return entry.person

        needle = query.lower()
        for entry in entries.values():
            if needle in entry.search_blob:
                return entry.person
        return None

    def find(self, text: str) -> Person | None:
        """`lookup`, rebuilding once first when the index is empty or stale and missed."""
        person = self.lookup(text)
        if person is not None:
            return person
        if not self._entries or self.is_stale:
            self.rebuild()
            return self.lookup(text)
        return None

    def search(self, text: str, limit: int = 20) -> list[Person]:
        needle = (text or "").strip().lower()
        if not needle:
            return []
        if not self._entries or self.is_stale:
            self.rebuild()
        matches = [e.person for e in self._entries.values() if needle in e.search_blob]
        return matches[:limit]
