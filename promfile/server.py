"""
FastAPI server for a single metrics file.

Provides HTTP endpoints for:
- Serving the current file content in Prometheus text format
- Reload status and health checks
- Streaming change notifications as Server-Sent Events

The file to serve is configured through environment variables, set by cli.py
before the server starts:
- PROMFILE_PATH: file to serve
- PROMFILE_POLL_INTERVAL: seconds between two checks of the symlink chain
- PROMFILE_RETRY_INTERVAL: seconds before watching a missing file again
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

from .filewatch import POLL_INTERVAL, WatchError, watch
from .metrics import RETRY_INTERVAL, MetricsStore, follow
from .sse import format_sse, watch_event


logger = logging.getLogger(__name__)

# Prometheus text exposition format
METRICS_MEDIA_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class StatusResponse(BaseModel):
    """Reload state of the served file."""
    path: str
    size: Optional[int]
    lastReload: Optional[int]
    reloads: int
    failures: int
    watches: int


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {value!r}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Follow the metrics file for the lifetime of the server."""
    path = os.environ.get("PROMFILE_PATH")
    if not path:
        raise RuntimeError("PROMFILE_PATH is not set")

    poll_interval = _env_float("PROMFILE_POLL_INTERVAL", POLL_INTERVAL)
    retry_interval = _env_float("PROMFILE_RETRY_INTERVAL", RETRY_INTERVAL)

    store = MetricsStore(path)
    cancel = asyncio.Event()
    app.state.store = store
    app.state.cancel = cancel
    app.state.poll_interval = poll_interval

    task = asyncio.create_task(
        follow(store, cancel, poll_interval=poll_interval, retry_interval=retry_interval)
    )
    logger.info("Serving %s", path)
    try:
        yield
    finally:
        cancel.set()
        await task


# FastAPI app
app = FastAPI(
    title="promfile",
    description="Serve a metrics file and reload it when it changes",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/metrics")
async def metrics(request: Request):
    """Serve the last good content of the metrics file.

    Raises:
        HTTPException: 503 if the file has not been loaded yet
    """
    store: MetricsStore = request.app.state.store
    if store.content is None:
        raise HTTPException(status_code=503, detail="Metrics not loaded yet")
    return Response(content=store.content, media_type=METRICS_MEDIA_TYPE)


@app.get("/api/health")
async def health():
    """Health check endpoint.

    Returns:
        Status OK if server is running
    """
    return {"status": "ok"}


@app.get("/api/status", response_model=StatusResponse)
async def status(request: Request):
    """Reload counters of the served file."""
    store: MetricsStore = request.app.state.store
    return StatusResponse(
        path=store.path,
        size=len(store.content) if store.content is not None else None,
        lastReload=store.last_reload,
        reloads=store.reloads,
        failures=store.failures,
        watches=store.watches,
    )


@app.get("/api/watch")
async def watch_stream(request: Request):
    """Stream change notifications of the served file via SSE.

    The stream ends after a "closed" event when the watch ends (file removed
    or renamed, symlink changed, or server shutting down). Clients reconnect
    to keep following the file.

    SSE Events:
        - changed: The file content may have changed
        - closed: The watch ended (closes connection)

    Raises:
        HTTPException: 404 if the file does not exist, 500 if it cannot be watched
    """
    store: MetricsStore = request.app.state.store

    try:
        handle = await watch(
            request.app.state.cancel,
            store.path,
            poll_interval=request.app.state.poll_interval,
        )
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=f"File not found: {store.path}")
    except WatchError as e:
        raise HTTPException(status_code=500, detail=str(e))

    async def generate_events():
        try:
            async for _ in handle:
                yield format_sse(watch_event("changed", store.path), event="changed")
            yield format_sse(watch_event("closed", store.path), event="closed")
        finally:
            await handle.aclose()

    return StreamingResponse(
        generate_events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
