from backend.services.directory import DirectoryIndex, normalize_identifier
from database.db import Person


def test_lookup_exact_normalized_and_substring(personnel):
    index = DirectoryIndex(personnel)
    index.rebuild()

    assert index.lookup("1001").full_name == "Ana Torres"
    assert index.lookup("10-02").full_name == "Luis Perez"
    assert index.lookup("marta").identifier == "2001"
    assert index.lookup("nobody") is None
    assert index.lookup("  ") is None


def test_find_rebuilds_empty_index(personnel):
    index = DirectoryIndex(personnel)
    assert len(index) == 0

    assert index.find("2001").full_name == "Marta Ruiz"
    assert len(index) == 3


def test_find_misses_new_person_until_stale(personnel):
    now = [0.0]
    index = DirectoryIndex(personnel, ttl_seconds=60, clock=lambda: now[0])
    index.rebuild()
    personnel.add_person(Person("3001", "Nuevo Ingreso", "Acme Mining"))

    assert index.find("3001") is None

    now[0] = 61.0
    assert index.find("3001").full_name == "Nuevo Ingreso"


def test_invalidate_drops_deactivated_person(personnel):
    index = DirectoryIndex(personnel)
    index.rebuild()
    personnel.set_active("1002", False)
    index.invalidate()

    assert index.find("1002") is None
    assert index.find("1001") is not None


def test_search_limits_results(personnel):
    index = DirectoryIndex(personnel)
    assert [p.identifier for p in index.search("acme", limit=1)] == ["1001"]


def test_normalize_identifier():
    assert normalize_identifier("V-12.345.678") == "12345678"
