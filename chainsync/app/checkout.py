"""
Sale submission: post directly when online, otherwise (or when the post
fails) hand the sale to the offline queue under the same idempotency key.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .cart import CartEngine
from .idempotency import generate_receipt_number
from .logs import json_log
from .offline_queue import OfflineQueue
from .receipts import ReceiptPrintJob, build_receipt_job
from .transport import SaleTransport, TransportError


@dataclass
class SubmissionResult:
    status: str  # "confirmed" | "queued"
    idempotency_key: str
    receipt_number: str
    payload: dict
    receipt: ReceiptPrintJob
    local_id: Optional[str] = None
    server_response: Optional[Any] = None
    error: Optional[str] = None


class CheckoutService:
    def __init__(
        self,
        queue: OfflineQueue,
        transport: SaleTransport,
        is_online: Callable[[], bool],
        sales_url: str = "/api/pos/sales",
        store_name: str = "ChainSync Store",
        currency: str = "USD",
    ):
        self.queue = queue
        self.transport = transport
        self.is_online = is_online
        self.sales_url = sales_url
        self.store_name = store_name
        self.currency = currency
        self._drains: set[asyncio.Task] = set()

    async def _post(self, payload: dict, key: str):
        """Returns (accepted, response_body, error)."""
        try:
            resp = await self.transport.post_json(self.sales_url, payload, {"Idempotency-Key": key})
        except TransportError as ex:
            return False, None, str(ex)
        if resp.ok or resp.already_applied:
            return True, resp.body, None
        return False, resp.body, f"HTTP {resp.status_code}"

    def _schedule_drain(self):
        task = asyncio.get_running_loop().create_task(self.queue.drain())
        self._drains.add(task)
        task.add_done_callback(self._drains.discard)

    async def wait_drains(self):
        while self._drains:
            await asyncio.gather(*list(self._drains))

    async def submit(self, cart: CartEngine, store_id: str, cashier: Optional[str] = None) -> SubmissionResult:
        cart.validate_for_submission()
        # Edits are refused until the sale is either confirmed or queued.
        cart.begin_submit()
        try:
            now = datetime.now(timezone.utc)
            payload = cart.build_sale_payload(store_id, cashier=cashier, created_at_ms=int(time.time() * 1000))
            key = cart.take_idempotency_key()
            receipt_number = generate_receipt_number()

            status = "queued"
            local_id = None
            server_response = None
            error = None
            if self.is_online():
                accepted, server_response, error = await self._post(payload, key)
                if accepted:
                    status = "confirmed"
                else:
                    json_log("warning", "checkout.direct_post_failed", idempotency_key=key, error=error)

            if status == "queued":
                # OfflineDataLossError propagates; the cart (and its key) stay for a retry.
                res = await self.queue.enqueue(self.sales_url, payload, key)
                local_id = res.local_id
        finally:
            cart.end_submit()

        job = build_receipt_job(
            payload,
            receipt_number=receipt_number,
            store_name=self.store_name,
            timestamp=now,
            currency=self.currency,
            cashier=cashier,
            pending_sync=status == "queued",
        )
        cart.clear_cart()
        json_log("info", "checkout.submitted", status=status, idempotency_key=key, local_id=local_id, total=payload["total"])

        # Offline drains would only burn retry attempts; the connectivity trigger covers that case.
        if self.is_online():
            self._schedule_drain()

        return SubmissionResult(
            status=status,
            idempotency_key=key,
            receipt_number=receipt_number,
            payload=payload,
            receipt=job,
            local_id=local_id,
            server_response=server_response,
            error=error,
        )
