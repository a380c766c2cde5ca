"""
Headless replay of the offline sales queue.

Drains the same sqlite file the agent writes to. Safe to run next to the
agent: records are lease-claimed before they are sent.

    python -m chainsync.workers.sync_worker --db pos.sqlite --sleep 5
"""

import argparse
import asyncio
import sys
import traceback

from ..app.config import settings
from ..app.logs import json_log
from ..app.offline_queue import OfflineQueue
from ..app.storage import open_store
from ..app.transport import SaleTransport
from .connectivity import ConnectivityMonitor
from .sync_driver import BackoffPolicy, SyncDriver


def build_driver(db_path: str, base_url: str) -> SyncDriver:
    store = open_store(db_path)
    queue = OfflineQueue(store)
    transport = SaleTransport(base_url, timeout_s=settings.request_timeout_s)
    return SyncDriver(
        queue,
        transport,
        backoff=BackoffPolicy(settings.sync_backoff_base_s, settings.sync_backoff_max_s),
        escalation_threshold=settings.sync_escalation_attempts,
        lease_s=settings.sync_lease_s,
    )


async def run(args) -> int:
    driver = build_driver(args.db, args.base_url)
    monitor = ConnectivityMonitor(driver, driver.transport, interval_s=args.sleep)
    try:
        while True:
            did_work = False
            try:
                if await monitor.probe():
                    result = await driver.sync_now()
                    did_work = result.synced > 0
                else:
                    json_log("info", "worker.sync.offline", pending=await driver.queue.count())
            except Exception as ex:
                # Never crash the worker loop; the next pass retries.
                json_log("error", "worker.sync.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)

            if args.once:
                break

            # If we synced anything, loop again quickly; otherwise back off.
            await asyncio.sleep(0 if did_work else args.sleep)
    finally:
        await driver.transport.aclose()
    return 0


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_path, help="SQLite DB path (default: POS_DB_PATH or pos.sqlite)")
    parser.add_argument("--base-url", default=settings.api_base_url, help="Store backend base URL (default: POS_API_BASE_URL)")
    parser.add_argument("--sleep", type=float, default=settings.connectivity_probe_s)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()
    if not args.base_url:
        parser.error("--base-url (or POS_API_BASE_URL) is required")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
