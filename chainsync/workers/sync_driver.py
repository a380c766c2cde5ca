"""
Connectivity-triggered replay of the offline sales queue.

Delivery rules:
- oldest first (created_at, then insertion order);
- one drain per store at a time in this process; extra triggers are no-ops;
- each record is lease-claimed before sending so another process (or tab)
  draining the same sqlite file skips it;
- a record is deleted only after 2xx, or 409 (key already applied);
- failures bump attempts and push next_attempt_at out with capped
  exponential backoff. Nothing is ever dropped automatically.
"""

import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..app.logs import json_log
from ..app.offline_queue import OfflineQueue
from ..app.storage import OfflineSaleRecord, StoreUnavailableError
from ..app.transport import SaleTransport, TransportError

# Store keys with a drain in flight, shared by every driver in the process.
_ACTIVE_DRAINS: set[str] = set()


@dataclass
class BackoffPolicy:
    base_delay_s: float = 1.0
    max_delay_s: float = 300.0

    def delay_seconds(self, attempts: int, record_id: Optional[str] = None) -> float:
        exp = min(max(int(attempts), 0), 32)
        delay = min(self.max_delay_s, self.base_delay_s * (2 ** exp))
        if record_id:
            # Deterministic per-record jitter so tills coming back online together don't retry in lockstep.
            digest = hashlib.sha1(f"{record_id}:{attempts}".encode("utf-8")).hexdigest()
            jitter_window = max(1, min(30, int(delay // 5) or 1))
            delay = min(self.max_delay_s, delay + (int(digest[:8], 16) % (jitter_window + 1)))
        return delay


@dataclass
class SyncResult:
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    coalesced: bool = False
    aborted: bool = False
    error: Optional[str] = None
    synced_keys: list[str] = field(default_factory=list)


@dataclass
class SyncStatus:
    online: bool
    pending: int
    escalated: int
    in_progress: bool
    last_result: Optional[SyncResult]
    last_synced_at: Optional[str]


class SyncDriver:
    def __init__(
        self,
        queue: OfflineQueue,
        transport: SaleTransport,
        backoff: Optional[BackoffPolicy] = None,
        escalation_threshold: int = 5,
        lease_s: float = 30.0,
        online: bool = False,
        on_result: Optional[Callable[[SyncResult], None]] = None,
    ):
        self.queue = queue
        self.transport = transport
        self.backoff = backoff or BackoffPolicy()
        self.escalation_threshold = int(escalation_threshold)
        self.lease_ms = int(lease_s * 1000)
        self.on_result = on_result
        self.last_result: Optional[SyncResult] = None
        self.last_synced_at: Optional[str] = None
        self._online = bool(online)
        self._task: Optional[asyncio.Task] = None
        queue.bind_drain_handler(self.sync_now)

    @property
    def online(self) -> bool:
        return self._online

    @property
    def in_progress(self) -> bool:
        return self.queue.store.key in _ACTIVE_DRAINS

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """Feed the connectivity signal. offline -> online schedules a drain on the running loop."""
        was_online = self._online
        self._online = bool(online)
        if self._online and not was_online:
            json_log("info", "sync.connectivity", state="online")
            self._task = asyncio.get_running_loop().create_task(self.sync_now())
            return self._task
        if was_online and not self._online:
            json_log("info", "sync.connectivity", state="offline")
        return None

    async def wait_idle(self):
        if self._task is not None:
            await asyncio.shield(self._task)

    async def sync_now(self) -> SyncResult:
        """Manual "sync now" and the connectivity trigger share this path."""
        key = self.queue.store.key
        if key in _ACTIVE_DRAINS:
            json_log("info", "sync.drain.coalesced", store=key)
            return SyncResult(coalesced=True)
        _ACTIVE_DRAINS.add(key)
        try:
            result = await self._drain_pass()
        except StoreUnavailableError as ex:
            json_log("error", "sync.drain.store_error", store=key, error=str(ex))
            result = SyncResult(aborted=True, error=str(ex))
        finally:
            _ACTIVE_DRAINS.discard(key)

        self.last_result = result
        if result.synced:
            self.last_synced_at = datetime.now(timezone.utc).isoformat()
        json_log(
            "info",
            "sync.drain.done",
            attempted=result.attempted,
            synced=result.synced,
            failed=result.failed,
            skipped=result.skipped,
            aborted=result.aborted,
        )
        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception as ex:
                json_log("warning", "sync.on_result.failed", error=str(ex))
        return result

    async def _claim(self, rec: OfflineSaleRecord) -> Optional[OfflineSaleRecord]:
        now = self.queue.now_ms()
        claimed = await asyncio.to_thread(self.queue.store.claim_sale, rec.id, now, now + self.lease_ms)
        if not claimed:
            return None
        # Re-read under the lease; another worker may have bumped attempts since list().
        return await self.queue.get(rec.id)

    async def _record_failure(self, rec: OfflineSaleRecord, error: str):
        attempts = int(rec.attempts or 0) + 1
        delay_ms = int(self.backoff.delay_seconds(attempts, rec.id) * 1000)
        await asyncio.to_thread(
            self.queue.store.update_sale,
            rec.id,
            attempts=attempts,
            last_error=error[:1000],
            next_attempt_at=self.queue.now_ms() + delay_ms,
            in_flight_until=None,
        )
        level = "error" if attempts >= self.escalation_threshold else "warning"
        json_log(
            level,
            "sync.record.failed",
            local_id=rec.id,
            idempotency_key=rec.idempotency_key,
            attempts=attempts,
            retry_in_ms=delay_ms,
            error=error,
        )

    async def _drain_pass(self) -> SyncResult:
        result = SyncResult()
        records = await self.queue.list()
        started = self.queue.now_ms()
        for listed in records:
            if listed.next_attempt_at and listed.next_attempt_at > started:
                result.skipped += 1
                continue
            rec = await self._claim(listed)
            if rec is None:
                result.skipped += 1
                continue

            result.attempted += 1
            try:
                resp = await self.transport.post_json(rec.url, rec.payload, rec.headers)
            except TransportError as ex:
                await self._record_failure(rec, str(ex))
                result.failed += 1
                result.aborted = True
                result.error = str(ex)
                # Connectivity is gone; leave the rest for the next trigger.
                break
            except Exception as ex:
                # A bad record (e.g. an unusable url) must not hold its lease or stall the queue.
                await self._record_failure(rec, f"{type(ex).__name__}: {ex}")
                result.failed += 1
                continue

            if resp.ok or resp.already_applied:
                await asyncio.to_thread(self.queue.store.delete_sale, rec.id)
                result.synced += 1
                result.synced_keys.append(rec.idempotency_key)
                json_log(
                    "info",
                    "sync.record.synced",
                    local_id=rec.id,
                    idempotency_key=rec.idempotency_key,
                    status_code=resp.status_code,
                )
                continue

            detail = ""
            if isinstance(resp.body, dict):
                detail = str(resp.body.get("detail") or resp.body.get("error") or resp.body.get("raw") or "")
            msg = f"HTTP {resp.status_code}"
            if detail:
                msg = f"{msg}: {detail[:500]}"
            await self._record_failure(rec, msg)
            result.failed += 1
        return result

    async def status(self) -> SyncStatus:
        pending = await self.queue.count()
        escalated = await self.queue.escalated_count(self.escalation_threshold)
        return SyncStatus(
            online=self._online,
            pending=pending,
            escalated=escalated,
            in_progress=self.in_progress,
            last_result=self.last_result,
            last_synced_at=self.last_synced_at,
        )


