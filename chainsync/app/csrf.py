import time
from typing import Callable, Optional

from .transport import SaleTransport


class CsrfTokenError(RuntimeError):
    pass


class CsrfTokenCache:
    """Caches the backend's CSRF token for `ttl_s` seconds."""

    def __init__(
        self,
        transport: SaleTransport,
        path: str = "/api/auth/csrf-token",
        ttl_s: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.path = path
        self.ttl_s = ttl_s
        self.clock = clock
        self._token: Optional[str] = None
        self._fetched_at = 0.0

    async def _request(self) -> str:
        resp, headers = await self.transport.get_json(self.path, headers={"Accept": "application/json"})
        if not resp.ok:
            raise CsrfTokenError(f"failed to fetch CSRF token (status {resp.status_code})")
        token = headers.get("X-CSRF-Token")
        if not token and isinstance(resp.body, dict):
            token = resp.body.get("token") or resp.body.get("csrfToken")
        if not token:
            raise CsrfTokenError("CSRF token missing from response")
        return str(token)

    async def get(self, force_refresh: bool = False) -> str:
        now = self.clock()
        if not force_refresh and self._token and now - self._fetched_at < self.ttl_s:
            return self._token
        token = await self._request()
        self._token = token
        self._fetched_at = now
        return token

    def clear(self):
        self._token = None
        self._fetched_at = 0.0
