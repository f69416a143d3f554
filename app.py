"""
Transit Overlay Service: live bus & train positions for the event map

Purpose
=======
Poll the bus and train vehicle-position feeds, merge them into one snapshot
and serve it to the map front-end, either as a polled JSON endpoint or as
Server-Sent Events (SSE) streams of refresh states and animated markers.

Key features
------------
- Two upstream feeds fetched concurrently, each under its own timeout.
  One feed failing yields a partial snapshot instead of an error.
- A refresh scheduler that keeps at most one fetch in flight and only polls
  while somebody is subscribed.
- Marker frames with short interpolated moves between ticks.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx
"""

from __future__ import annotations
from typing import Any, AsyncIterator, Dict
import asyncio, time, os, json
from collections import deque

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from marker_renderer import DEFAULT_ANIMATION_S, Marker, render_markers
from refresh_scheduler import RefreshScheduler
from transit_feeds import TransitFetcher
from transit_models import RefreshState

# ---------------------------
# Config
# ---------------------------
VEH_REFRESH_S = float(os.getenv("VEH_REFRESH_S", "5"))
SNAPSHOT_MAX_AGE_S = float(os.getenv("SNAPSHOT_MAX_AGE_S", str(VEH_REFRESH_S)))
MARKER_ANIMATION_S = float(os.getenv("MARKER_ANIMATION_S", str(DEFAULT_ANIMATION_S)))
# Keep markers of vehicles that drop out of a feed for this long (0 = remove at once)
MARKER_GRACE_S = float(os.getenv("MARKER_GRACE_S", "0"))
SSE_QUEUE_SIZE = int(os.getenv("SSE_QUEUE_SIZE", "10"))

# ---------------------------
# API call log
# ---------------------------
API_CALL_LOG = deque(maxlen=100)
API_CALL_SUBS: set[asyncio.Queue] = set()


def record_api_call(method: str, url: str, status: int) -> None:
    item = {"ts": int(time.time()*1000), "method": method, "url": url, "status": status}
    API_CALL_LOG.append(item)
    encoded = f"data: {json.dumps(item)}\n\n"
    for q in list(API_CALL_SUBS):
        try:
            q.put_nowait(encoded)
        except asyncio.QueueFull:
            pass  # Drop update for slow clients


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Transit Overlay")


@app.on_event("startup")
async def init_transit() -> None:
    fetcher = TransitFetcher.from_env(record_api_call_fn=record_api_call)
    if not fetcher.bus.api_key:
        print("[transit] TRANSIT_BUS_API_KEY not set; bus feed will report failures")
    if not fetcher.train.api_key:
        print("[transit] TRANSIT_TRAIN_API_KEY not set; train feed will report failures")
    app.state.transit_fetcher = fetcher
    app.state.scheduler = RefreshScheduler(
        fetcher.fetch_snapshot,
        interval_s=VEH_REFRESH_S,
        queue_maxsize=SSE_QUEUE_SIZE,
    )


@app.on_event("shutdown")
async def shutdown_transit() -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.aclose()
    fetcher = getattr(app.state, "transit_fetcher", None)
    if fetcher is not None:
        await fetcher.aclose()


def _get_scheduler(request: Request) -> RefreshScheduler:
    return request.app.state.scheduler


def _is_total_failure(state: RefreshState) -> bool:
    if not state.has_error:
        return False
    snapshot = state.latest_snapshot
    return snapshot is None or snapshot.all_failed


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def state_events(scheduler: RefreshScheduler) -> AsyncIterator[str]:
    """Yield every published refresh state as an SSE message."""
    q = scheduler.subscribe()
    try:
        while True:
            state = await q.get()
            yield _sse(state.to_dict())
    finally:
        scheduler.unsubscribe(q)


async def marker_events(
    scheduler: RefreshScheduler,
    *,
    duration_s: float = MARKER_ANIMATION_S,
    grace_s: float = MARKER_GRACE_S,
) -> AsyncIterator[str]:
    """Yield one marker frame per new snapshot, rendered for this connection."""
    q = scheduler.subscribe()
    markers: Dict[str, Marker] = {}
    last_snapshot = None
    try:
        while True:
            state = await q.get()
            snapshot = state.latest_snapshot
            if snapshot is None or snapshot is last_snapshot:
                continue
            frame = render_markers(
                markers, snapshot, now=time.time(), duration_s=duration_s, grace_s=grace_s
            )
            markers = frame.markers
            last_snapshot = snapshot
            payload = frame.to_dict()
            payload["timestamp"] = snapshot.timestamp
            payload["partial"] = snapshot.partial
            payload["has_error"] = state.has_error
            yield _sse(payload)
    finally:
        scheduler.unsubscribe(q)


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health(request: Request):
    scheduler = _get_scheduler(request)
    state = scheduler.state
    return {
        "ok": not state.has_error,
        "last_error": str(state.last_error) if state.last_error is not None else None,
        "last_error_ts": state.last_error_ts or None,
        "subscribers": scheduler.subscriber_count,
        "phase": scheduler.phase,
    }


# ---------------------------
# Transit snapshot
# ---------------------------
@app.get("/v1/transit/snapshot")
async def transit_snapshot(request: Request):
    scheduler = _get_scheduler(request)
    state = await scheduler.ensure_fresh(SNAPSHOT_MAX_AGE_S)
    payload = state.to_dict()
    if _is_total_failure(state):
        payload["buses"] = []
        payload["trains"] = []
        return JSONResponse(payload, status_code=500)
    return payload


# ---------------------------
# SSE: transit updates
# ---------------------------
@app.get("/v1/stream/transit")
async def stream_transit(request: Request):
    return StreamingResponse(state_events(_get_scheduler(request)), media_type="text/event-stream")


@app.get("/v1/stream/transit/markers")
async def stream_transit_markers(request: Request):
    return StreamingResponse(marker_events(_get_scheduler(request)), media_type="text/event-stream")


# ---------------------------
# SSE: External API calls
# ---------------------------
@app.get("/v1/stream/api_calls")
async def stream_api_calls():
    async def gen():
        q: asyncio.Queue = asyncio.Queue(maxsize=10)  # Limit queue to prevent memory bloat
        API_CALL_SUBS.add(q)
        try:
            for item in list(API_CALL_LOG):
                yield f"data: {json.dumps(item)}\n\n"
            # Stream updates as they come (pre-encoded by record_api_call)
            while True:
                encoded = await q.get()
                yield encoded
        finally:
            API_CALL_SUBS.discard(q)
    return StreamingResponse(gen(), media_type="text/event-stream")
