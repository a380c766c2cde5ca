import json
import os
import sys


# Allow running pytest from either the repo root or from within `chainsync/`.
# Tests import `chainsync.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import httpx
import pytest

from chainsync.app.transport import SaleTransport

BASE_URL = "http://backend.test"
SALES_PATH = "/api/pos/sales"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeBackend:
    """
    Stands in for the store backend behind httpx.MockTransport.

    Sales are applied once per Idempotency-Key; a repeated key gets 409.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.applied: dict[str, dict] = {}
        self.sale_statuses: list[int] = []  # consumed one per sales POST, then 201
        self.offline = False
        self.promotions: dict[str, dict] = {}
        self.promotions_status = 200
        self.csrf_token = "csrf-abc"
        self.csrf_status = 200

    def sales_posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST" and r.url.path == SALES_PATH]

    def promotion_posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/promotions/batch-check"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        self.requests.append(request)
        path = request.url.path
        if path == "/health":
            return httpx.Response(200, json={"ok": True})
        if path == "/api/auth/csrf-token":
            if self.csrf_status != 200:
                return httpx.Response(self.csrf_status)
            return httpx.Response(200, json={"token": self.csrf_token})
        if path == "/api/promotions/batch-check":
            if self.promotions_status != 200:
                return httpx.Response(self.promotions_status)
            body = json.loads(request.content)
            found = {pid: self.promotions[pid] for pid in body["productIds"] if pid in self.promotions}
            return httpx.Response(200, json={"promotions": found})
        if path == SALES_PATH and request.method == "POST":
            if self.sale_statuses:
                return httpx.Response(self.sale_statuses.pop(0), json={"error": "rejected"})
            key = request.headers["Idempotency-Key"]
            if key in self.applied:
                return httpx.Response(409, json={"error": "duplicate idempotency key"})
            self.applied[key] = json.loads(request.content)
            return httpx.Response(201, json={"id": f"sale-{len(self.applied)}"})
        return httpx.Response(404)

    def transport(self) -> SaleTransport:
        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(self.handler))
        return SaleTransport(BASE_URL, timeout_s=5.0, client=client)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()
