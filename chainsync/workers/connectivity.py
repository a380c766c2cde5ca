import asyncio
from typing import Optional

from ..app.logs import json_log
from ..app.transport import SaleTransport, TransportError
from .sync_driver import SyncDriver


class ConnectivityMonitor:
    """Polls the backend health endpoint and feeds the sync driver's online flag."""

    def __init__(
        self,
        driver: SyncDriver,
        transport: SaleTransport,
        interval_s: float = 10.0,
        health_path: str = "/health",
        probe_timeout_s: float = 1.0,
    ):
        self.driver = driver
        self.transport = transport
        self.interval_s = interval_s
        self.health_path = health_path
        self.probe_timeout_s = probe_timeout_s
        self._stop = asyncio.Event()

    async def probe(self) -> bool:
        if not self.transport.base_url:
            return False
        try:
            resp, _ = await self.transport.get_json(self.health_path, timeout_s=self.probe_timeout_s)
        except TransportError as ex:
            json_log("info", "connectivity.probe_failed", error=str(ex))
            return False
        return resp.ok

    async def check_once(self) -> bool:
        online = await self.probe()
        self.report(online)
        return online

    def report(self, online: bool) -> Optional[asyncio.Task]:
        """Explicit signal (e.g. the UI saw the network come back)."""
        return self.driver.set_online(online)

    async def run(self):
        while not self._stop.is_set():
            try:
                await self.check_once()
            except Exception as ex:
                json_log("error", "connectivity.loop_error", error=str(ex))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    def stop(self):
        self._stop.set()
