from datetime import datetime, timedelta

import pytest

from backend.services.engine import ReconciliationEngine
from backend.services.export import CsvExportSink
from database.db import Person, PersonnelStore, SqliteTabularStore, create_tables


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 2, 8, 0, 0))


@pytest.fixture()
def db_path(tmp_path):
    path = tmp_path / "surpass_test.db"
    create_tables(path)
    return path


@pytest.fixture()
def personnel(db_path):
    store = PersonnelStore(db_path)
    store.add_person(Person("1001", "Ana Torres", "Acme Mining"))
    store.add_person(Person("1002", "Luis Perez", "Acme Mining"))
    store.add_person(Person("2001", "Marta Ruiz", "Contractor Co"))
    return store


@pytest.fixture()
def make_engine(db_path, personnel, clock, tmp_path):
    def _make(store=None, **kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("export_sink", CsvExportSink(tmp_path / "exports"))
        engine = ReconciliationEngine(store or SqliteTabularStore(db_path), personnel, **kwargs)
        engine.setup()
        return engine

    return _make


@pytest.fixture()
def engine(make_engine):
    return make_engine()
