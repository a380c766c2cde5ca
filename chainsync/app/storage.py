"""
Local durable state for the POS agent.

One interface (`DurableStore`), three implementations:
- `SqliteStore`: file-backed, survives restarts.
- `MemoryStore`: process-lifetime only, optional record quota.
- `ResilientStore`: primary + fallback; writes fall through to the fallback
  when the primary fails, reads merge both.

`open_store()` probes sqlite once at startup and picks the backend. Callers
never branch on which one is active.
"""

import copy
import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Optional

from .logs import json_log

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "sqlite_schema.sql")
CART_SNAPSHOT_ID = "current"


class StoreUnavailableError(RuntimeError):
    pass


@dataclass
class OfflineSaleRecord:
    id: str
    idempotency_key: str
    url: str
    payload: dict
    created_at: int
    method: str = "POST"
    headers: dict = field(default_factory=dict)
    attempts: int = 0
    next_attempt_at: Optional[int] = None
    last_error: Optional[str] = None
    in_flight_until: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "OfflineSaleRecord":
        return cls(
            id=row["id"],
            idempotency_key=row["idempotency_key"],
            url=row["url"],
            method=row["method"] or "POST",
            headers=json.loads(row["headers_json"] or "{}"),
            payload=json.loads(row["payload_json"] or "{}"),
            created_at=int(row["created_at"]),
            attempts=int(row["attempts"] or 0),
            next_attempt_at=row["next_attempt_at"],
            last_error=row["last_error"],
            in_flight_until=row["in_flight_until"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


_UPDATABLE = {"payload", "attempts", "next_attempt_at", "last_error", "in_flight_until"}


class DurableStore:
    backend = "abstract"

    @property
    def key(self) -> str:
        return f"{self.backend}:{id(self)}"

    def add_sale(self, record: OfflineSaleRecord) -> None:
        raise NotImplementedError

    def count_sales(self) -> int:
        raise NotImplementedError

    def count_escalated(self, threshold: int) -> int:
        raise NotImplementedError

    def list_sales(self) -> list[OfflineSaleRecord]:
        raise NotImplementedError

    def get_sale(self, local_id: str) -> Optional[OfflineSaleRecord]:
        raise NotImplementedError

    def update_sale(self, local_id: str, **fields) -> bool:
        raise NotImplementedError

    def delete_sale(self, local_id: str) -> bool:
        raise NotImplementedError

    def claim_sale(self, local_id: str, now_ms: int, lease_until_ms: int) -> bool:
        """Take the delivery lease for a record; False if another worker holds an unexpired one."""
        raise NotImplementedError

    def save_cart(self, snapshot: dict, now_ms: int) -> None:
        raise NotImplementedError

    def load_cart(self) -> Optional[dict]:
        raise NotImplementedError

    def clear_cart(self) -> None:
        raise NotImplementedError


def _check_fields(fields: dict):
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"cannot update fields: {sorted(unknown)}")


class SqliteStore(DurableStore):
    backend = "sqlite"

    def __init__(self, path: str, schema_path: str = SCHEMA_PATH, timeout_s: float = 5.0):
        self.path = os.path.abspath(path)
        self.schema_path = schema_path
        self.timeout_s = timeout_s

    @property
    def key(self) -> str:
        return f"sqlite:{self.path}"

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout_s)
        except (sqlite3.Error, OSError) as ex:
            raise StoreUnavailableError(f"sqlite open failed: {ex}") from ex
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as ex:
            raise StoreUnavailableError(f"sqlite error: {ex}") from ex
        finally:
            conn.close()

    def init_db(self):
        if not os.path.exists(self.schema_path):
            raise RuntimeError(f"Missing schema file: {self.schema_path}")
        with open(self.schema_path, "r", encoding="utf-8") as f:
            schema = f.read()
        with self._connect() as conn:
            # CREATE TABLE IF NOT EXISTS does not add new columns to older files,
            # and the schema's indexes need them, so patch the table first.
            cur = conn.cursor()
            cur.execute("PRAGMA table_info(offline_sales)")
            cols = {r[1] for r in cur.fetchall()}
            wanted = {
                "next_attempt_at": "INTEGER",
                "last_error": "TEXT",
                "in_flight_until": "INTEGER",
            }
            if cols:
                for col, ddl in wanted.items():
                    if col not in cols:
                        cur.execute(f"ALTER TABLE offline_sales ADD COLUMN {col} {ddl}")
            conn.executescript(schema)

    def add_sale(self, record: OfflineSaleRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO offline_sales
                  (id, idempotency_key, url, method, headers_json, payload_json,
                   created_at, attempts, next_attempt_at, last_error, in_flight_until)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.idempotency_key,
                    record.url,
                    record.method,
                    json.dumps(record.headers),
                    json.dumps(record.payload, default=str),
                    record.created_at,
                    record.attempts,
                    record.next_attempt_at,
                    record.last_error,
                    record.in_flight_until,
                ),
            )

    def count_sales(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(1) FROM offline_sales").fetchone()
            return int(row[0] if row else 0)

    def count_escalated(self, threshold: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(1) FROM offline_sales WHERE attempts >= ?",
                (int(threshold),),
            ).fetchone()
            return int(row[0] if row else 0)

    def list_sales(self) -> list[OfflineSaleRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM offline_sales ORDER BY created_at ASC, seq ASC").fetchall()
            return [OfflineSaleRecord.from_row(r) for r in rows]

    def get_sale(self, local_id: str) -> Optional[OfflineSaleRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM offline_sales WHERE id = ?", (local_id,)).fetchone()
            return OfflineSaleRecord.from_row(row) if row else None

    def update_sale(self, local_id: str, **fields) -> bool:
        _check_fields(fields)
        if not fields:
            return self.get_sale(local_id) is not None
        cols = []
        params = []
        for k, v in fields.items():
            if k == "payload":
                cols.append("payload_json = ?")
                params.append(json.dumps(v, default=str))
            else:
                cols.append(f"{k} = ?")
                params.append(v)
        params.append(local_id)
        with self._connect() as conn:
            cur = conn.execute(f"UPDATE offline_sales SET {', '.join(cols)} WHERE id = ?", params)
            return cur.rowcount == 1

    def delete_sale(self, local_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM offline_sales WHERE id = ?", (local_id,))
            return cur.rowcount == 1

    def claim_sale(self, local_id: str, now_ms: int, lease_until_ms: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE offline_sales
                SET in_flight_until = ?
                WHERE id = ?
                  AND (in_flight_until IS NULL OR in_flight_until <= ?)
                """,
                (lease_until_ms, local_id, now_ms),
            )
            return cur.rowcount == 1

    def save_cart(self, snapshot: dict, now_ms: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cart_snapshots (id, snapshot_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  snapshot_json=excluded.snapshot_json,
                  updated_at=excluded.updated_at
                """,
                (CART_SNAPSHOT_ID, json.dumps(snapshot, default=str), now_ms),
            )

    def load_cart(self) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT snapshot_json FROM cart_snapshots WHERE id = ?",
                (CART_SNAPSHOT_ID,),
            ).fetchone()
        if not row:
            return None
        try:
            data = json.loads(row["snapshot_json"] or "{}")
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def clear_cart(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM cart_snapshots WHERE id = ?", (CART_SNAPSHOT_ID,))


class MemoryStore(DurableStore):
    backend = "memory"

    def __init__(self, max_records: Optional[int] = None):
        self.max_records = max_records
        self._sales: dict[str, OfflineSaleRecord] = {}
        self._order: dict[str, int] = {}
        self._seq = 0
        self._cart: Optional[dict] = None
        # Store calls arrive from worker threads (asyncio.to_thread).
        self._lock = threading.Lock()

    def add_sale(self, record: OfflineSaleRecord) -> None:
        with self._lock:
            if self.max_records is not None and len(self._sales) >= self.max_records:
                raise StoreUnavailableError("memory store quota exceeded")
            if record.id in self._sales:
                raise StoreUnavailableError(f"duplicate local id {record.id}")
            self._seq += 1
            self._sales[record.id] = copy.deepcopy(record)
            self._order[record.id] = self._seq

    def count_sales(self) -> int:
        with self._lock:
            return len(self._sales)

    def count_escalated(self, threshold: int) -> int:
        with self._lock:
            return sum(1 for r in self._sales.values() if (r.attempts or 0) >= threshold)

    def list_sales(self) -> list[OfflineSaleRecord]:
        with self._lock:
            rows = sorted(self._sales.values(), key=lambda r: (r.created_at, self._order[r.id]))
            return [copy.deepcopy(r) for r in rows]

    def get_sale(self, local_id: str) -> Optional[OfflineSaleRecord]:
        with self._lock:
            rec = self._sales.get(local_id)
            return copy.deepcopy(rec) if rec else None

    def update_sale(self, local_id: str, **fields) -> bool:
        _check_fields(fields)
        with self._lock:
            rec = self._sales.get(local_id)
            if not rec:
                return False
            for k, v in fields.items():
                setattr(rec, k, copy.deepcopy(v))
            return True

    def delete_sale(self, local_id: str) -> bool:
        with self._lock:
            self._order.pop(local_id, None)
            return self._sales.pop(local_id, None) is not None

    def claim_sale(self, local_id: str, now_ms: int, lease_until_ms: int) -> bool:
        with self._lock:
            rec = self._sales.get(local_id)
            if not rec:
                return False
            if rec.in_flight_until is not None and rec.in_flight_until > now_ms:
                return False
            rec.in_flight_until = lease_until_ms
            return True

    def save_cart(self, snapshot: dict, now_ms: int) -> None:
        with self._lock:
            self._cart = copy.deepcopy(snapshot)

    def load_cart(self) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self._cart)

    def clear_cart(self) -> None:
        with self._lock:
            self._cart = None


class ResilientStore(DurableStore):
    backend = "resilient"

    def __init__(self, primary: DurableStore, fallback: DurableStore):
        self.primary = primary
        self.fallback = fallback
        self.degraded = False

    @property
    def key(self) -> str:
        return self.primary.key

    def _mark_degraded(self, op: str, ex: Exception):
        if not self.degraded:
            json_log("warning", "store.degraded", op=op, primary=self.primary.backend, error=str(ex))
        self.degraded = True

    def _owner(self, local_id: str) -> DurableStore:
        if self.fallback.get_sale(local_id) is not None:
            return self.fallback
        return self.primary

    def add_sale(self, record: OfflineSaleRecord) -> None:
        try:
            self.primary.add_sale(record)
            return
        except StoreUnavailableError as ex:
            self._mark_degraded("add_sale", ex)
        self.fallback.add_sale(record)

    def _primary_read(self, op: str, fn, default):
        try:
            return fn()
        except StoreUnavailableError as ex:
            self._mark_degraded(op, ex)
            return default

    def count_sales(self) -> int:
        return self._primary_read("count_sales", self.primary.count_sales, 0) + self.fallback.count_sales()

    def count_escalated(self, threshold: int) -> int:
        primary = self._primary_read("count_escalated", lambda: self.primary.count_escalated(threshold), 0)
        return primary + self.fallback.count_escalated(threshold)

    def list_sales(self) -> list[OfflineSaleRecord]:
        rows = self._primary_read("list_sales", self.primary.list_sales, []) + self.fallback.list_sales()
        # sorted() is stable, so same-millisecond records keep per-store insertion order.
        return sorted(rows, key=lambda r: r.created_at)

    def get_sale(self, local_id: str) -> Optional[OfflineSaleRecord]:
        rec = self.fallback.get_sale(local_id)
        if rec is not None:
            return rec
        return self._primary_read("get_sale", lambda: self.primary.get_sale(local_id), None)

    def update_sale(self, local_id: str, **fields) -> bool:
        return self._owner(local_id).update_sale(local_id, **fields)

    def delete_sale(self, local_id: str) -> bool:
        return self._owner(local_id).delete_sale(local_id)

    def claim_sale(self, local_id: str, now_ms: int, lease_until_ms: int) -> bool:
        return self._owner(local_id).claim_sale(local_id, now_ms, lease_until_ms)

    def save_cart(self, snapshot: dict, now_ms: int) -> None:
        try:
            self.primary.save_cart(snapshot, now_ms)
            return
        except StoreUnavailableError as ex:
            self._mark_degraded("save_cart", ex)
        self.fallback.save_cart(snapshot, now_ms)

    def load_cart(self) -> Optional[dict]:
        snap = self._primary_read("load_cart", self.primary.load_cart, None)
        return snap if snap is not None else self.fallback.load_cart()

    def clear_cart(self) -> None:
        self.fallback.clear_cart()
        self._primary_read("clear_cart", self.primary.clear_cart, None)


def open_store(path: str, fallback_max_records: Optional[int] = None) -> DurableStore:
    """Probe sqlite at `path`; degrade to memory when it cannot be opened."""
    fallback = MemoryStore(max_records=fallback_max_records)
    primary = SqliteStore(path)
    try:
        primary.init_db()
    except RuntimeError as ex:
        # StoreUnavailableError, or the schema file is missing.
        json_log("warning", "store.sqlite_unavailable", path=primary.path, error=str(ex))
        return fallback
    return ResilientStore(primary, fallback)
