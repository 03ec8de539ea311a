from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Set

LOG = logging.getLogger("relay.broadcaster")

_CLOSED = object()


class SnapshotSource(Protocol):
    async def list_inputs(self) -> list[dict[str, Any]]: ...

    async def list_jobs(self) -> list[dict[str, Any]]: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Subscription:
    """One observer's bounded outbound queue.

    offer() never blocks; a full queue means the observer is not keeping up.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, message: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> Optional[dict[str, Any]]:
        """Next message, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def pending(self) -> int:
        return self._queue.qsize()


class StatusBroadcaster:
    def __init__(self, store: SnapshotSource, *, interval_s: float = 5.0, queue_size: int = 64) -> None:
        self.store = store
        self.interval_s = interval_s
        self.queue_size = queue_size
        self._subscribers: Set[Subscription] = set()
        self._task: Optional[asyncio.Task] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self.queue_size)
        self._subscribers.add(sub)
        LOG.debug("observer subscribed (%d total)", len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        sub.close()

    def publish(self, message: dict[str, Any]) -> int:
        """Queue message for every observer; returns how many accepted it."""
        delivered = 0
        for sub in list(self._subscribers):
            if sub.offer(message):
                delivered += 1
                continue
            LOG.warning("dropping observer: outbound queue full (%d messages)", sub.pending())
            self.unsubscribe(sub)
        return delivered

    def emit_event(self, event_type: str, job_id: int, detail: Optional[dict[str, Any]] = None) -> int:
        return self.publish({
            "type": "event",
            "eventType": event_type,
            "jobId": job_id,
            "timestamp": _now(),
            "detail": detail or {},
        })

    async def snapshot(self) -> dict[str, Any]:
        inputs = await self.store.list_inputs()
        outputs = await self.store.list_jobs()
        return {"type": "snapshot", "inputs": inputs, "outputs": outputs, "timestamp": _now()}

    async def publish_snapshot(self) -> int:
        return self.publish(await self.snapshot())

    async def run(self) -> None:
        LOG.info("status broadcast started (interval=%.1fs)", self.interval_s)
        while True:
            try:
                if self._subscribers:
                    await self.publish_snapshot()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOG.exception("status snapshot failed")
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for sub in list(self._subscribers):
            self.unsubscribe(sub)
