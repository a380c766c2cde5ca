import argparse
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .cart import CartValidationError
from .config import settings
from .logs import json_log
from .offline_queue import OfflineDataLossError
from .routers.cart import router as cart_router
from .routers.promotions import router as promotions_router
from .routers.receipts import router as receipts_router
from .routers.sales import router as sales_router
from .routers.sync import router as sync_router
from .state import AgentState

STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _cart_validation_error(_req: Request, exc: Exception):
    return JSONResponse(status_code=422, content={"detail": "validation failed", "errors": list(getattr(exc, "errors", []))})


def _offline_data_loss(req: Request, exc: Exception):
    json_log(
        "error",
        "sale.not_saved",
        request_id=_current_request_id(req),
        idempotency_key=getattr(exc, "idempotency_key", None),
        error=str(exc),
    )
    return JSONResponse(
        status_code=507,
        content={
            "detail": "sale_not_saved",
            "hint": "The sale could not be stored locally. Keep the paper trail and retry; the cart was kept.",
            "idempotency_key": getattr(exc, "idempotency_key", None),
        },
    )


def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=422, content=content)


def _value_error(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    if path != "/api/health":
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=dur_ms,
        )
    return response


def create_app(state: Optional[AgentState] = None, run_monitor: Optional[bool] = None) -> FastAPI:
    """
    Build the local agent API.

    `run_monitor` defaults to probing only when a backend URL is configured;
    without one the till stays offline until someone reports otherwise.
    """
    agent = state or AgentState.from_settings()
    if run_monitor is None:
        run_monitor = bool(agent.transport.base_url)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        monitor_task = None
        if run_monitor:
            monitor_task = asyncio.create_task(agent.monitor.run())
        json_log("info", "agent.started", store_backend=agent.store.backend, monitor=run_monitor)
        try:
            yield
        finally:
            agent.monitor.stop()
            if monitor_task is not None:
                await monitor_task
            await agent.aclose()
            json_log("info", "agent.stopped")

    app = FastAPI(title="ChainSync POS Agent", version=settings.api_version, lifespan=lifespan)
    app.state.agent = agent

    app.add_exception_handler(CartValidationError, _cart_validation_error)
    app.add_exception_handler(OfflineDataLossError, _offline_data_loss)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(ValueError, _value_error)
    app.add_exception_handler(Exception, _unhandled_exception)
    app.middleware("http")(_request_logging)

    @app.get("/api/health")
    async def health():
        return {
            "ok": True,
            "env": settings.env,
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "online": agent.driver.online,
            "store_backend": agent.store.backend,
            "store_degraded": bool(getattr(agent.store, "degraded", False)),
        }

    app.include_router(cart_router, prefix="/api")
    app.include_router(sales_router, prefix="/api")
    app.include_router(sync_router, prefix="/api")
    app.include_router(promotions_router, prefix="/api")
    app.include_router(receipts_router, prefix="/api")
    return app


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--init-db", action="store_true", help="Initialize local SQLite schema and exit")
    parser.add_argument("--db", default=settings.db_path, help="SQLite DB path (default: POS_DB_PATH or pos.sqlite)")
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="HTTP host to bind (default: 127.0.0.1). Use 0.0.0.0 only if you explicitly want LAN exposure.",
    )
    parser.add_argument("--port", type=int, default=7070, help="HTTP port (default: 7070)")
    args = parser.parse_args()

    state = AgentState.from_settings(db_path=args.db)
    if args.init_db:
        # open_store() already created the schema.
        print(f"ok ({state.store.backend})")
        return

    public_host = "localhost" if args.host in {"127.0.0.1", "localhost"} else args.host
    print(f"POS Agent running on http://{public_host}:{args.port}")
    uvicorn.run(create_app(state), host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
