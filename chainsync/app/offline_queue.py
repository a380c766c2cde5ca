"""
Offline sales queue.

Records are appended once per committed sale and removed only after the
server acknowledged their idempotency key (see workers/sync_driver.py).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .idempotency import generate_local_id
from .logs import json_log
from .storage import DurableStore, OfflineSaleRecord, StoreUnavailableError


class OfflineDataLossError(RuntimeError):
    """Neither the durable store nor its fallback accepted a committed sale."""

    def __init__(self, idempotency_key: str, error: str):
        super().__init__(f"offline sale {idempotency_key} could not be saved: {error}")
        self.idempotency_key = idempotency_key
        self.error = error


@dataclass
class EnqueueResult:
    local_id: str
    idempotency_key: str


WakeHint = Callable[[], Awaitable[None]]
DrainHandler = Callable[[], Awaitable[object]]


class OfflineQueue:
    def __init__(self, store: DurableStore, clock: Callable[[], float] = time.time, wake_hint: Optional[WakeHint] = None):
        self.store = store
        self.clock = clock
        self.wake_hint = wake_hint
        self._drain_handler: Optional[DrainHandler] = None

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def bind_drain_handler(self, handler: Optional[DrainHandler]):
        self._drain_handler = handler

    async def _ping_wake_hint(self):
        if not self.wake_hint:
            return
        try:
            await self.wake_hint()
        except Exception as ex:
            # Best-effort signal; the sync driver's own triggers stay authoritative.
            json_log("warning", "queue.wake_hint.failed", error=str(ex))

    async def enqueue(self, url: str, payload: dict, idempotency_key: str, headers: Optional[dict] = None) -> EnqueueResult:
        key = str(idempotency_key or "").strip()
        if not key:
            raise ValueError("idempotency_key is required; generate it once per sale, outside retries")
        now = self.now_ms()
        record = OfflineSaleRecord(
            id=generate_local_id(),
            idempotency_key=key,
            url=url,
            method="POST",
            headers={"Content-Type": "application/json", **(headers or {}), "Idempotency-Key": key},
            payload=payload,
            created_at=now,
            attempts=0,
            next_attempt_at=now,
            last_error=None,
        )
        try:
            await asyncio.to_thread(self.store.add_sale, record)
        except StoreUnavailableError as ex:
            json_log("error", "queue.enqueue.data_loss", idempotency_key=key, error=str(ex))
            raise OfflineDataLossError(key, str(ex)) from ex
        json_log("info", "queue.enqueued", local_id=record.id, idempotency_key=key, backend=self.store.backend)
        await self._ping_wake_hint()
        return EnqueueResult(local_id=record.id, idempotency_key=key)

    async def count(self) -> int:
        return await asyncio.to_thread(self.store.count_sales)

    async def escalated_count(self, threshold: int = 5) -> int:
        return await asyncio.to_thread(self.store.count_escalated, threshold)

    async def list(self) -> list[OfflineSaleRecord]:
        return await asyncio.to_thread(self.store.list_sales)

    async def get(self, local_id: str) -> Optional[OfflineSaleRecord]:
        return await asyncio.to_thread(self.store.get_sale, local_id)

    async def delete(self, local_id: str) -> bool:
        deleted = await asyncio.to_thread(self.store.delete_sale, local_id)
        if deleted:
            json_log("info", "queue.deleted", local_id=local_id)
        return deleted

    async def expedite(self, local_id: str) -> bool:
        return await asyncio.to_thread(self.store.update_sale, local_id, next_attempt_at=self.now_ms())

    async def update_payload(self, local_id: str, payload: dict) -> bool:
        # The idempotency key stays: this is still the same logical sale.
        return await asyncio.to_thread(
            self.store.update_sale,
            local_id,
            payload=payload,
            attempts=0,
            next_attempt_at=self.now_ms(),
        )

    async def drain(self):
        """Ask the replay side to deliver everything pending. Safe to call redundantly."""
        await self._ping_wake_hint()
        if self._drain_handler is None:
            return None
        return await self._drain_handler()
