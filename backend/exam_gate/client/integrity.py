"""
Client-side integrity collector.

Buffers behaviour signals in a bounded queue and ships them to
POST /api/attempts/{id}/integrity. Flush triggers:

1. queue length reaches flush_threshold (5)
2. every flush_interval seconds (15)
3. page hide (final flush: beacon first, then a keep-alive request)

A flush takes at most batch_size (20) events off the head of the queue;
if delivery fails the batch goes back to the head. Only the final flush
accepts loss.
"""

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from exam_gate.client.api import ApiError, ExamGateClient
from exam_gate.logging_config import get_logger, log_with_context

logger = get_logger("integrity")


def _client_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class IntegrityCollector:

    def __init__(self, client: ExamGateClient, attempt_id: str, capacity: int = 200,
                 flush_threshold: int = 5, flush_interval: float = 15.0, batch_size: int = 20,
                 tick_interval: float = 1.0, drift_threshold_ms: float = 1500,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.attempt_id = attempt_id
        self.capacity = capacity
        self.flush_threshold = flush_threshold
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.tick_interval = tick_interval
        self.drift_threshold_ms = drift_threshold_ms
        self.clock = clock

        self.queue: deque = deque()
        self.dropped = 0
        self._flushing = False
        self._last_tick: Optional[float] = None
        self._tasks: List[asyncio.Task] = []
        self._pending_flushes: set = set()
        self._stopped = False

    # ── producers ─────────────────────────────────────────────

    def record(self, event_type: str, severity: str = "info", metadata: Dict[str, Any] = None):
        if self._stopped:
            return
        self.queue.append({
            "type": event_type,
            "severity": severity,
            "occurredAt": _client_timestamp(),
            "metadata": metadata or {},
        })
        self._trim()
        if len(self.queue) >= self.flush_threshold:
            self._schedule_flush()

    def on_visibility_change(self, hidden: bool):
        if hidden:
            self.record("tab_hidden", "warning")
        else:
            self.record("tab_visible", "info")

    def on_fullscreen_change(self, fullscreen: bool):
        if fullscreen:
            self.record("fullscreen_entered", "info")
        else:
            self.record("fullscreen_exited", "warning")

    def on_blur(self):
        self.record("window_blur", "warning")

    def on_focus(self):
        self.record("window_focus", "info")

    def tick(self, now: float = None) -> Optional[float]:
        """
        Timer heartbeat; records timer_drift when the gap since the last
        tick overshoots tick_interval by more than drift_threshold_ms.
        Returns the drift in ms, or None on the first tick.
        """
        now = self.clock() if now is None else now
        last, self._last_tick = self._last_tick, now
        if last is None:
            return None
        drift_ms = (now - last - self.tick_interval) * 1000
        if drift_ms > self.drift_threshold_ms:
            self.record("timer_drift", "warning", {"drift_ms": int(drift_ms)})
        return drift_ms

    # ── delivery ──────────────────────────────────────────────

    def _trim(self):
        while len(self.queue) > self.capacity:
            self.queue.popleft()
            self.dropped += 1

    def _take_batch(self) -> List[dict]:
        batch = []
        while self.queue and len(batch) < self.batch_size:
            batch.append(self.queue.popleft())
        return batch

    def _requeue(self, batch: List[dict]):
        self.queue.extendleft(reversed(batch))
        self._trim()

    def _schedule_flush(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the interval flush will pick the events up
            return
        task = loop.create_task(self.flush())
        self._pending_flushes.add(task)
        task.add_done_callback(self._pending_flushes.discard)

    async def flush(self) -> int:
        """Send one batch; returns the number of events delivered."""
        if self._flushing or not self.queue:
            return 0
        self._flushing = True
        batch = self._take_batch()
        try:
            await self.client.send_integrity(self.attempt_id, batch)
            return len(batch)
        except asyncio.CancelledError:
            self._requeue(batch)
            raise
        except ApiError as exc:
            self._requeue(batch)
            log_with_context(logger, "WARNING", "Integrity flush failed; batch re-queued",
                context={"attempt_id": self.attempt_id},
                extra_data={"error": exc.code, "queued": len(self.queue)})
            return 0
        finally:
            self._flushing = False

    async def final_flush(self) -> int:
        """Best-effort delivery of everything left: beacon, then keep-alive."""
        delivered = 0
        while self.queue:
            batch = self._take_batch()
            if await self.client.send_integrity_beacon(self.attempt_id, batch):
                delivered += len(batch)
                continue
            try:
                await self.client.send_integrity(self.attempt_id, batch, timeout=self.client.beacon_timeout)
                delivered += len(batch)
            except ApiError as exc:
                self.dropped += len(batch)
                log_with_context(logger, "INFO", "Final integrity flush lost {} events".format(len(batch)),
                    context={"attempt_id": self.attempt_id}, extra_data={"error": exc.code})
        return delivered

    async def page_hide(self) -> int:
        self.record("suspicious_client_event", "info", {"reason": "pagehide"})
        return await self.final_flush()

    # ── lifetime ──────────────────────────────────────────────

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    async def _tick_loop(self):
        self.tick()
        while True:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def start(self):
        """Start the interval flush and drift tick; requires a running loop."""
        if self._tasks:
            return
        loop = asyncio.get_running_loop()
        self._stopped = False
        self._tasks = [loop.create_task(self._flush_loop()), loop.create_task(self._tick_loop())]

    async def stop(self, final_flush: bool = True) -> int:
        """Cancel background tasks; optionally ship what is left."""
        tasks = self._tasks + list(self._pending_flushes)
        self._tasks = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        delivered = await self.final_flush() if final_flush else 0
        self._stopped = True
        return delivered
