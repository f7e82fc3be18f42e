import threading

import pytest

from multisig_store import (
    KeyedLocks,
    MemoryStore,
    SqliteStore,
    counter_key,
    open_store,
    tx_key,
    wallet_key,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryStore()
    else:
        s = SqliteStore(str(tmp_path / "wallet.sqlite3"))
    yield s
    s.close()


def test_key_namespaces():
    assert wallet_key("abc") == "wallet:abc"
    assert tx_key("abc") == "tx:abc"
    assert counter_key("btc_multisig") == "_id:btc_multisig"


def test_get_put_delete(store):
    assert store.get("wallet:x") is None
    store.put("wallet:x", {"m": 2, "participants": [{"public_key": "02aa"}]})
    assert store.get("wallet:x") == {"m": 2, "participants": [{"public_key": "02aa"}]}
    store.delete("wallet:x")
    assert store.get("wallet:x") is None
    store.delete("wallet:x")


def test_values_are_not_aliased(store):
    record = {"signatures": {}}
    store.put("tx:1", record)
    record["signatures"]["02aa"] = ["sig"]
    loaded = store.get("tx:1")
    assert loaded == {"signatures": {}}
    loaded["signatures"]["02bb"] = ["sig"]
    assert store.get("tx:1") == {"signatures": {}}


def test_iterate_by_prefix(store):
    store.put("tx:1", {"n": 1})
    store.put("tx:2", {"n": 2})
    store.put("wallet:1", {"n": 3})
    store.put("_id:btc_multisig", 4)

    keys = sorted(key for key, _ in store.iterate("tx:"))
    assert keys == ["tx:1", "tx:2"]
    assert len(list(store.iterate())) == 4


def test_increment_starts_at_one(store):
    assert store.increment("_id:a") == 1
    assert store.increment("_id:a") == 2
    assert store.increment("_id:b") == 1
    assert store.get("_id:a") == 2


def test_increment_is_atomic_under_threads(store):
    results = []
    lock = threading.Lock()

    def worker():
        local = [store.increment("_id:race") for _ in range(25)]
        with lock:
            results.extend(local)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == list(range(1, 201))


def test_sqlite_store_persists_across_reopen(tmp_path):
    path = str(tmp_path / "walletDB.sqlite3")
    first = SqliteStore(path)
    first.put("wallet:w", {"address": "tb1q"})
    first.increment("_id:btc_multisig")
    first.close()

    second = SqliteStore(path)
    assert second.get("wallet:w") == {"address": "tb1q"}
    assert second.increment("_id:btc_multisig") == 2
    second.close()


def test_open_store_memory_and_file(tmp_path):
    assert isinstance(open_store(":memory:"), MemoryStore)
    file_store = open_store(str(tmp_path / "db.sqlite3"))
    assert isinstance(file_store, SqliteStore)
    file_store.close()


def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    counter = {"value": 0}

    def worker():
        for _ in range(200):
            with locks.hold("tx:1"):
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert counter["value"] == 800
    assert len(locks) == 0


def test_keyed_locks_reentrant_and_cleaned_up():
    locks = KeyedLocks()
    with locks.hold("tx:1"):
        with locks.hold("tx:1"):
            assert len(locks) == 1
        with locks.hold("tx:2"):
            assert len(locks) == 2
    assert len(locks) == 0


def test_keyed_locks_released_on_error():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("tx:1"):
            raise RuntimeError("boom")
    assert len(locks) == 0
