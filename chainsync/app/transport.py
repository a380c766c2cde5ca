import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx


class TransportError(Exception):
    """The request never produced an HTTP response (timeout, refused, DNS, ...)."""


@dataclass
class TransportResponse:
    status_code: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def already_applied(self) -> bool:
        # Server saw this idempotency key before; the sale exists exactly once.
        return self.status_code == 409


def _decode_body(resp: httpx.Response):
    text = resp.text or ""
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text[:1000]}


class SaleTransport:
    """Outbound HTTP to the store backend. Every call is bounded by `timeout_s`."""

    def __init__(self, base_url: str = "", timeout_s: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout_s = timeout_s
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s)

    async def post_json(self, url: str, payload: dict, headers: Optional[dict] = None) -> TransportResponse:
        try:
            resp = await self.client.post(
                url,
                content=json.dumps(payload, default=str).encode("utf-8"),
                headers={"Content-Type": "application/json", **(headers or {})},
                timeout=self.timeout_s,
            )
        except httpx.RequestError as ex:
            raise TransportError(f"{type(ex).__name__}: {ex}") from ex
        return TransportResponse(status_code=resp.status_code, body=_decode_body(resp))

    async def get_json(self, url: str, headers: Optional[dict] = None, timeout_s: Optional[float] = None) -> tuple[TransportResponse, httpx.Headers]:
        try:
            resp = await self.client.get(url, headers=headers or {}, timeout=timeout_s or self.timeout_s)
        except httpx.RequestError as ex:
            raise TransportError(f"{type(ex).__name__}: {ex}") from ex
        return TransportResponse(status_code=resp.status_code, body=_decode_body(resp)), resp.headers

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()
