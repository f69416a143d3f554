"""Fixed-cadence refresh loop for the transit overlay.

The scheduler is the only writer of ``RefreshState``. Every transition
replaces the state object and pushes it to subscriber queues, so readers
just take the current reference and never wait on a fetch.

Phases::

    idle --tick--> fetching --done--> idle

A tick that fires while a fetch is still running is skipped, so at most one
fetch is ever in flight. The timer only runs while somebody is subscribed.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from transit_feeds import BothFeedsFailed
from transit_models import RefreshState, Snapshot

IDLE = "idle"
FETCHING = "fetching"

DEFAULT_INTERVAL_S = 5.0


class RefreshScheduler:
    def __init__(
        self,
        fetch_snapshot: Callable[[], Awaitable[Snapshot]],
        *,
        interval_s: float = DEFAULT_INTERVAL_S,
        queue_maxsize: int = 10,
    ) -> None:
        self._fetch_snapshot = fetch_snapshot
        self.interval_s = interval_s
        self.queue_maxsize = queue_maxsize
        self.phase = IDLE
        self.skipped_ticks = 0
        self.fetch_count = 0
        self._state = RefreshState()
        self._subscribers: set[asyncio.Queue] = set()
        self._timer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def is_fetching(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ----- subscriptions -----

    def subscribe(self) -> asyncio.Queue:
        """Register a consumer; the first one starts the timer."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_maxsize)
        self._subscribers.add(queue)
        current = self._state
        if current.latest_snapshot is not None or current.has_error:
            self._offer(queue, current)
        self._start()
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)
        if not self._subscribers:
            self._stop()

    def _offer(self, queue: asyncio.Queue, state: RefreshState) -> None:
        try:
            queue.put_nowait(state)
        except asyncio.QueueFull:
            pass  # Drop update for slow consumers

    def _publish(self, state: RefreshState) -> None:
        self._state = state
        for queue in list(self._subscribers):
            self._offer(queue, state)

    # ----- timer -----

    def _start(self) -> None:
        if self.is_running:
            return
        print(f"[scheduler] timer started ({self.interval_s:g}s interval)")
        self._timer = asyncio.create_task(self._run_timer())

    def _stop(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        print("[scheduler] timer stopped, no subscribers")

    async def _run_timer(self) -> None:
        # First tick is immediate so a new subscriber never waits a full interval.
        while True:
            self.tick()
            await asyncio.sleep(self.interval_s)

    def tick(self) -> Optional[asyncio.Task]:
        """Start a fetch unless one is already running."""
        if self.is_fetching:
            self.skipped_ticks += 1
            return None
        self._inflight = asyncio.create_task(self._refresh())
        return self._inflight

    # ----- fetching -----

    async def _refresh(self) -> RefreshState:
        self.phase = FETCHING
        self.fetch_count += 1
        self._publish(RefreshState(
            latest_snapshot=self._state.latest_snapshot,
            last_error=self._state.last_error,
            last_error_ts=self._state.last_error_ts,
            is_loading=True,
        ))
        start = time.perf_counter()
        try:
            snapshot = await self._fetch_snapshot()
        except asyncio.CancelledError:
            self.phase = IDLE
            self._publish(RefreshState(
                latest_snapshot=self._state.latest_snapshot,
                last_error=self._state.last_error,
                last_error_ts=self._state.last_error_ts,
            ))
            raise
        except Exception as exc:
            # Keep the last good snapshot visible; the next tick retries.
            print(f"[scheduler] fetch raised: {exc!r}")
            new_state = RefreshState(
                latest_snapshot=self._state.latest_snapshot,
                last_error=exc,
                last_error_ts=time.time(),
            )
        else:
            if snapshot.all_failed:
                error = BothFeedsFailed(snapshot.errors)
                print(f"[scheduler] {error}")
                new_state = RefreshState(
                    latest_snapshot=snapshot,
                    last_error=error,
                    last_error_ts=time.time(),
                )
            else:
                new_state = RefreshState(latest_snapshot=snapshot)
        duration = time.perf_counter() - start
        if duration > self.interval_s:
            print(f"[scheduler] fetch took {duration:.2f}s, longer than the {self.interval_s:g}s interval")
        self.phase = IDLE
        self._publish(new_state)
        return new_state

    def _join_or_start(self) -> asyncio.Task:
        if self.is_fetching:
            assert self._inflight is not None
            return self._inflight
        task = self.tick()
        assert task is not None
        return task

    async def refresh_now(self) -> RefreshState:
        """Fetch now, or join the fetch already in flight, and return the result."""
        task = self._join_or_start()
        # Shielded so one caller going away does not cancel the shared fetch.
        return await asyncio.shield(task)

    async def ensure_fresh(self, max_age_s: Optional[float] = None) -> RefreshState:
        """Return a state no older than ``max_age_s`` for polling readers.

        While the timer runs the cached state is always returned; otherwise a
        stale or missing snapshot triggers one shared fetch.
        """
        if self.is_running:
            return self._state
        max_age = self.interval_s if max_age_s is None else max_age_s
        snapshot = self._state.latest_snapshot
        if snapshot is not None:
            age = (datetime.now(timezone.utc) - snapshot.captured_at).total_seconds()
            if age < max_age:
                return self._state
        return await self.refresh_now()

    async def aclose(self) -> None:
        self._stop()
        self._subscribers.clear()
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
            try:
                await inflight
            except asyncio.CancelledError:
                pass
        self._inflight = None


__all__ = ["IDLE", "FETCHING", "DEFAULT_INTERVAL_S", "RefreshScheduler"]
