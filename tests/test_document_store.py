import pytest

from document_store import InMemoryDocumentStore, SQLiteDocumentStore, create_store, timestamp_key
from config import TestingConfig


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryDocumentStore()
    return SQLiteDocumentStore(str(tmp_path / "store.db"))


def test_write_then_read_nested(any_store):
    any_store.write("attendance/2024-01-10/R001", {"status": "IN", "checkInTime": "08:00:00"})
    any_store.write("attendance/2024-01-10/R002", {"status": "ABSENT"})

    assert any_store.read("attendance/2024-01-10/R001/status") == "IN"
    assert any_store.read("attendance/2024-01-10") == {
        "R001": {"status": "IN", "checkInTime": "08:00:00"},
        "R002": {"status": "ABSENT"},
    }
    assert any_store.read("attendance/2024-01-11") is None


def test_write_replaces_the_whole_node(any_store):
    any_store.write("a/b", {"x": 1, "y": 2})
    any_store.write("a/b", {"x": 3})
    assert any_store.read("a/b") == {"x": 3}


def test_none_fields_are_pruned(any_store):
    any_store.write("a/b", {"x": None, "y": {"z": None}, "k": 0})
    assert any_store.read("a/b") == {"k": 0}


def test_remove_cleans_up(any_store):
    any_store.write("a/b/c", 1)
    any_store.remove("a/b/c")
    assert any_store.read("a") is None


def test_reads_are_copies(any_store):
    any_store.write("a", {"list": [1, 2]})
    value = any_store.read("a")
    value["list"].append(3)
    assert any_store.read("a") == {"list": [1, 2]}


def test_transact_increments(any_store):
    for _ in range(3):
        any_store.transact("stats/help", lambda cur: {"count": ((cur or {}).get("count") or 0) + 1})
    assert any_store.read("stats/help") == {"count": 3}


def test_transact_error_leaves_value(any_store):
    any_store.write("k", {"v": 1})

    def explode(current):
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        any_store.transact("k", explode)
    assert any_store.read("k") == {"v": 1}


def test_subscribe_fires_now_and_on_change(any_store):
    seen = []
    unsubscribe = any_store.subscribe("students", seen.append)
    any_store.write("students/R001", {"name": "Asha"})
    any_store.write("other/x", 1)
    unsubscribe()
    any_store.write("students/R002", {"name": "Ben"})

    assert seen == [None, {"R001": {"name": "Asha"}}]


def test_sqlite_persists_between_instances(tmp_path):
    path = str(tmp_path / "store.db")
    SQLiteDocumentStore(path).write("qrTokens/2024-01-10", {"token": "ABCDEFGH"})
    assert SQLiteDocumentStore(path).read("qrTokens/2024-01-10/token") == "ABCDEFGH"


def test_sqlite_rejects_memory_path():
    with pytest.raises(ValueError):
        SQLiteDocumentStore(":memory:")


def test_path_traversal_is_rejected(any_store):
    with pytest.raises(ValueError):
        any_store.read("a/../b")


def test_timestamp_keys_strictly_increase():
    keys = [int(timestamp_key()) for _ in range(100)]
    assert keys == sorted(set(keys))


def test_create_store_from_config(tmp_path):
    assert isinstance(create_store(TestingConfig), InMemoryDocumentStore)

    class Sqlite(TestingConfig):
        STORE_BACKEND = "sqlite"
        STORE_PATH = str(tmp_path / "x.db")

    assert isinstance(create_store(Sqlite), SQLiteDocumentStore)
