import sqlite3

import pytest

from chainsync.app.storage import (
    MemoryStore,
    OfflineSaleRecord,
    ResilientStore,
    SqliteStore,
    StoreUnavailableError,
    open_store,
)


def _rec(local_id: str, created_at: int, key: str = None, **kw) -> OfflineSaleRecord:
    return OfflineSaleRecord(
        id=local_id,
        idempotency_key=key or f"key-{local_id}",
        url="/api/pos/sales",
        payload={"total": "1.00"},
        created_at=created_at,
        headers={"Idempotency-Key": key or f"key-{local_id}"},
        **kw,
    )


class _DownStore(MemoryStore):
    backend = "down"

    def _boom(self, *_a, **_kw):
        raise StoreUnavailableError("primary down")

    add_sale = count_sales = count_escalated = list_sales = get_sale = _boom
    save_cart = load_cart = clear_cart = _boom


@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteStore(str(tmp_path / "pos.sqlite"))
    store.init_db()
    return store


def test_sqlite_lists_oldest_first_with_insertion_tiebreak(sqlite_store):
    sqlite_store.add_sale(_rec("c", 300))
    sqlite_store.add_sale(_rec("a", 100))
    sqlite_store.add_sale(_rec("b2", 200))
    sqlite_store.add_sale(_rec("b1", 200))
    assert [r.id for r in sqlite_store.list_sales()] == ["a", "b2", "b1", "c"]
    assert sqlite_store.count_sales() == 4


def test_sqlite_round_trips_record_fields(sqlite_store):
    sqlite_store.add_sale(_rec("a", 100, key="k-1"))
    got = sqlite_store.get_sale("a")
    assert got.idempotency_key == "k-1"
    assert got.headers == {"Idempotency-Key": "k-1"}
    assert got.payload == {"total": "1.00"}
    assert got.attempts == 0
    assert sqlite_store.get_sale("missing") is None


def test_sqlite_update_and_escalation_count(sqlite_store):
    sqlite_store.add_sale(_rec("a", 100))
    sqlite_store.add_sale(_rec("b", 200))
    assert sqlite_store.update_sale("a", attempts=5, last_error="HTTP 500")
    assert not sqlite_store.update_sale("missing", attempts=1)
    assert sqlite_store.count_escalated(5) == 1
    assert sqlite_store.get_sale("a").last_error == "HTTP 500"
    with pytest.raises(ValueError):
        sqlite_store.update_sale("a", idempotency_key="other")


def test_claim_is_exclusive_until_lease_expires(sqlite_store):
    sqlite_store.add_sale(_rec("a", 100))
    assert sqlite_store.claim_sale("a", now_ms=1000, lease_until_ms=31000)
    assert not sqlite_store.claim_sale("a", now_ms=2000, lease_until_ms=32000)
    assert sqlite_store.claim_sale("a", now_ms=31000, lease_until_ms=61000)
    assert not sqlite_store.claim_sale("missing", now_ms=0, lease_until_ms=1)


def test_sqlite_cart_snapshot(sqlite_store):
    assert sqlite_store.load_cart() is None
    sqlite_store.save_cart({"items": [], "taxRate": "0.085"}, now_ms=1)
    sqlite_store.save_cart({"items": [], "taxRate": "0.1"}, now_ms=2)
    assert sqlite_store.load_cart() == {"items": [], "taxRate": "0.1"}
    sqlite_store.clear_cart()
    assert sqlite_store.load_cart() is None


def test_init_db_adds_columns_to_older_files(tmp_path):
    path = tmp_path / "old.sqlite"
    conn = sqlite3.connect(path)
    conn.execute(
        """
        CREATE TABLE offline_sales (
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          id TEXT NOT NULL UNIQUE,
          idempotency_key TEXT NOT NULL,
          url TEXT NOT NULL,
          method TEXT NOT NULL DEFAULT 'POST',
          headers_json TEXT NOT NULL DEFAULT '{}',
          payload_json TEXT NOT NULL,
          created_at INTEGER NOT NULL,
          attempts INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.commit()
    conn.close()

    store = SqliteStore(str(path))
    store.init_db()
    store.add_sale(_rec("a", 1))
    assert store.claim_sale("a", now_ms=1, lease_until_ms=2)


def test_memory_store_quota():
    store = MemoryStore(max_records=1)
    store.add_sale(_rec("a", 1))
    with pytest.raises(StoreUnavailableError):
        store.add_sale(_rec("b", 2))


def test_memory_store_returns_copies():
    store = MemoryStore()
    store.add_sale(_rec("a", 1))
    got = store.get_sale("a")
    got.payload["total"] = "999.00"
    assert store.get_sale("a").payload["total"] == "1.00"


def test_resilient_store_falls_back_and_merges_reads():
    primary = MemoryStore()
    fallback = MemoryStore()
    store = ResilientStore(primary, fallback)
    store.add_sale(_rec("a", 100))
    assert not store.degraded

    down = _DownStore()
    store2 = ResilientStore(down, fallback)
    store2.add_sale(_rec("b", 50))
    assert store2.degraded
    assert fallback.get_sale("b") is not None
    assert store2.count_sales() == 1
    assert [r.id for r in store2.list_sales()] == ["b"]
    assert store2.update_sale("b", attempts=2)
    assert store2.delete_sale("b")

    store.add_sale(_rec("c", 10))
    assert [r.id for r in store.list_sales()] == ["c", "a"]


def test_open_store_degrades_to_memory_when_sqlite_cannot_open(tmp_path):
    store = open_store(str(tmp_path / "missing-dir" / "pos.sqlite"))
    assert store.backend == "memory"
    store.add_sale(_rec("a", 1))
    assert store.count_sales() == 1


def test_open_store_uses_sqlite_when_available(tmp_path):
    store = open_store(str(tmp_path / "pos.sqlite"))
    assert store.backend == "resilient"
    assert store.primary.backend == "sqlite"
    assert store.key.startswith("sqlite:")
