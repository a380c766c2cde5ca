"""
Promotion lookups for the till.

The cache answers synchronously from memory; misses are batched into one
POST /api/promotions/batch-check per debounce window. A stale entry is just
a miss: it is not evicted, only refetched.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .csrf import CsrfTokenCache
from .logs import json_log
from .pricing import ZERO, q, to_decimal
from .transport import SaleTransport, TransportError


class Promotion(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    name: str = ""
    promotion_type: Optional[str] = Field(default=None, alias="promotionType")
    discount_percent: Optional[Decimal] = Field(default=None, alias="discountPercent")
    custom_discount_percent: Optional[Decimal] = Field(default=None, alias="customDiscountPercent")
    effective_discount: Optional[Decimal] = Field(default=None, alias="effectiveDiscount")

    def percent(self) -> Decimal:
        # Most specific first: per-product override, then the promotion's own rate.
        for v in (self.custom_discount_percent, self.discount_percent, self.effective_discount):
            if v:
                return Decimal(v)
        return ZERO


class _Miss:
    def __repr__(self):
        return "MISS"

    def __bool__(self):
        return False


# Returned by get_cached_promotion when the entry is absent or expired.
MISS = _Miss()


@dataclass
class PromotionCacheEntry:
    promotion: Optional[Promotion]
    fetched_at: float


@dataclass
class EffectivePrice:
    price: Decimal
    promotion: Optional[Promotion] = None
    has_discount: bool = False
    discount_amount: Decimal = field(default_factory=lambda: q(ZERO))


class PromotionCache:
    def __init__(
        self,
        transport: SaleTransport,
        store_id: str,
        csrf: Optional[CsrfTokenCache] = None,
        path: str = "/api/promotions/batch-check",
        ttl_s: float = 60.0,
        debounce_s: float = 0.1,
        clock: Callable[[], float] = time.time,
        timeout_s: float = 5.0,
    ):
        self.transport = transport
        self.store_id = store_id
        self.csrf = csrf
        self.path = path
        self.ttl_s = ttl_s
        self.debounce_s = debounce_s
        self.clock = clock
        self.timeout_s = timeout_s
        self.is_loading = False
        self._entries: dict[str, PromotionCacheEntry] = {}
        self._pending: set[str] = set()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._batch_tasks: set[asyncio.Task] = set()
        self.on_update: Optional[Callable[[dict], None]] = None

    def _is_fresh(self, entry: Optional[PromotionCacheEntry], now: float) -> bool:
        return entry is not None and (now - entry.fetched_at) <= self.ttl_s

    def get_cached_promotion(self, product_id: str) -> Union[Promotion, None, _Miss]:
        entry = self._entries.get(product_id)
        if not self._is_fresh(entry, self.clock()):
            return MISS
        return entry.promotion

    def queue_promotion_fetch(self, product_id: str):
        """Trailing debounce: every call restarts the window."""
        self._pending.add(product_id)
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce_s, self._fire_batch)

    def _fire_batch(self):
        self._timer = None
        ids = sorted(self._pending)
        self._pending.clear()
        if not ids:
            return
        task = asyncio.get_running_loop().create_task(self.fetch_promotions(ids))
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)

    async def flush(self):
        """Run any debounced batch now and wait for in-flight batches."""
        if self._timer is not None:
            self._timer.cancel()
            self._fire_batch()
        while self._batch_tasks:
            await asyncio.gather(*list(self._batch_tasks))

    async def _post_batch(self, ids: list[str]) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.csrf is not None:
            try:
                headers["X-CSRF-Token"] = await self.csrf.get()
            except (TransportError, RuntimeError) as ex:
                json_log("warning", "promotions.csrf_unavailable", error=str(ex))
        resp = await self.transport.post_json(self.path, {"productIds": ids, "storeId": self.store_id}, headers)
        if not resp.ok:
            raise TransportError(f"HTTP {resp.status_code}")
        if not isinstance(resp.body, dict) or "promotions" not in resp.body:
            raise ValueError("unexpected promotions response")
        raw = resp.body.get("promotions") or {}
        if not isinstance(raw, dict):
            raise ValueError("promotions must be an object")
        out = {}
        for pid, data in raw.items():
            if data:
                out[str(pid)] = Promotion.model_validate(data)
        return out

    async def fetch_promotions(self, product_ids: list[str]) -> dict[str, Optional[Promotion]]:
        if not self.store_id or not product_ids:
            return {}
        requested = list(dict.fromkeys(str(p) for p in product_ids))
        now = self.clock()
        stale = [pid for pid in requested if not self._is_fresh(self._entries.get(pid), now)]
        if not stale:
            return {pid: self._entries[pid].promotion for pid in requested}

        self.is_loading = True
        try:
            fetched = await asyncio.wait_for(self._post_batch(stale), timeout=self.timeout_s)
        except (TransportError, ValidationError, ValueError, asyncio.TimeoutError) as ex:
            json_log("warning", "promotions.fetch_failed", count=len(stale), error=str(ex))
            return {}
        finally:
            self.is_loading = False

        fetched_at = self.clock()
        for pid in stale:
            self._entries[pid] = PromotionCacheEntry(promotion=fetched.get(pid), fetched_at=fetched_at)

        result = {}
        for pid in requested:
            if pid in fetched:
                result[pid] = fetched[pid]
            else:
                entry = self._entries.get(pid)
                result[pid] = entry.promotion if entry else None
        if self.on_update is not None:
            self.on_update(result)
        return result

    def get_effective_price(self, product_id: str, original_price) -> EffectivePrice:
        price = to_decimal(original_price)
        cached = self.get_cached_promotion(product_id)
        if cached is MISS or cached is None or cached.promotion_type == "bundle":
            return EffectivePrice(price=price)
        percent = cached.percent()
        if percent <= 0:
            return EffectivePrice(price=price, promotion=cached)
        discount = q(price * percent / Decimal(100))
        return EffectivePrice(
            price=max(ZERO, q(price - discount)),
            promotion=cached,
            has_discount=True,
            discount_amount=discount,
        )

    def clear(self):
        self._entries.clear()
        self._pending.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
