import pytest

from fairplay.store import decode_record, encode_record, iter_records, open_store
from fairplay.store.memory import MemoryKeyValue
from fairplay.store.sqlite import SQLiteKeyValue


@pytest.fixture(params=["memory", "sqlite"])
def kv(request, tmp_path):
    if request.param == "memory":
        store = MemoryKeyValue()
    else:
        store = SQLiteKeyValue(str(tmp_path / "db" / "fairplay.db"))
    yield store
    store.close()


def test_basic_operations(kv):
    assert kv.get(b"a") is None
    kv.put(b"a", b"1")
    assert kv.get(b"a") == b"1" and kv.has(b"a")
    kv.put(b"a", b"2")
    assert kv.get(b"a") == b"2"
    kv.delete(b"a")
    assert not kv.has(b"a")


def test_prefix_iteration_is_ordered_and_bounded(kv):
    for key in (b"req:2", b"req:1", b"reqx", b"ent:1", b"req:\xff"):
        kv.put(key, key)
    assert [k for k, _ in kv.iter_prefix(b"req:")] == [b"req:1", b"req:2", b"req:\xff"]
    assert [k for k, _ in kv.iter_prefix(b"\xff")] == []


def test_transaction_rolls_back_on_error(kv):
    kv.put(b"k", b"before")
    with pytest.raises(RuntimeError):
        with kv.transaction():
            kv.put(b"k", b"after")
            kv.put(b"other", b"x")
            raise RuntimeError("abort")
    assert kv.get(b"k") == b"before"
    assert not kv.has(b"other")

    with kv.transaction():
        with kv.transaction():
            kv.put(b"k", b"nested")
    assert kv.get(b"k") == b"nested"


def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "kv.db")
    with SQLiteKeyValue(path) as kv:
        kv.put(b"ent:1", encode_record({"amount": 5}))
    with SQLiteKeyValue(path) as kv:
        assert list(iter_records(kv, b"ent:")) == [{"amount": 5}]


def test_open_store_and_records(tmp_path):
    assert isinstance(open_store(None), MemoryKeyValue)
    assert isinstance(open_store(str(tmp_path / "x.db")), SQLiteKeyValue)
    assert decode_record(encode_record({"b": 1, "a": [1, 2]})) == {"a": [1, 2], "b": 1}


def test_sqlite_rejects_non_bytes(tmp_path):
    with SQLiteKeyValue(str(tmp_path / "kv.db")) as kv:
        with pytest.raises(TypeError):
            kv.put("key", b"v")
