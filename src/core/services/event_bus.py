"""
EventBus — thread-safe, in-process pub/sub with bounded replay.

Background tasks and the deployment pipeline publish lifecycle events
here; a UI or the CLI subscribes to follow progress.  One bus is
constructed per process by ``AppContext`` and passed to every
component that publishes.

Thread safety model
───────────────────
- ``_lock`` protects ``_seq``, ``_buffer`` and ``_subscribers``.
- Each subscriber gets its own ``queue.Queue``; the publisher pushes
  into all queues under the lock and each consumer drains its own.

Message standard (v1)
─────────────────────
Every event is a dict with these fields::

    {
        "v": 1,                       # schema version
        "ts": 1739648400.123,         # publish time
        "seq": 47,                    # monotonic sequence
        "type": "sync:progress",      # <domain>:<action>
        "key": "node-sync-...",       # resource id (task id, stage)
        "data": {                     # event payload
            "taskId": ..., "service": ..., "type": ...,
            "timestamp": ..., ...
        },
    }
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Generator
from typing import Any

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1


class EventBus:
    """Thread-safe, in-process pub/sub with bounded replay buffer.

    Parameters
    ----------
    buffer_size : int
        Maximum number of events kept for replay and ``history()``.
    subscriber_queue_size : int
        Maximum backlog per subscriber.  A subscriber whose queue
        fills up is dropped.
    """

    def __init__(
        self,
        *,
        buffer_size: int = 500,
        subscriber_queue_size: int = 200,
    ) -> None:
        self._lock = threading.Lock()
        self._seq: int = 0
        self._buffer: deque[dict] = deque(maxlen=buffer_size)
        self._subscribers: list[queue.Queue[dict]] = []
        self._subscriber_queue_size = subscriber_queue_size

    # ── Properties ──────────────────────────────────────────────

    @property
    def seq(self) -> int:
        """Current sequence number (monotonically increasing)."""
        with self._lock:
            return self._seq

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # ── Publishing ──────────────────────────────────────────────

    def publish(
        self,
        event_type: str,
        *,
        key: str = "",
        data: dict[str, Any] | None = None,
        **kw: Any,
    ) -> dict:
        """Broadcast an event to all subscribers.

        Parameters
        ----------
        event_type : str
            Event type in ``<domain>:<action>`` format.
        key : str
            Resource identifier.  Empty for system events.
        data : dict | None
            Event-specific payload.
        **kw :
            Additional top-level fields (``error``, ``duration_s``).

        Returns
        -------
        dict
            The full event dict with ``seq`` assigned.
        """
        with self._lock:
            self._seq += 1
            event: dict[str, Any] = {
                "v": _SCHEMA_VERSION,
                "ts": time.time(),
                "seq": self._seq,
                "type": event_type,
                "key": key,
                "data": data or {},
                **kw,
            }
            self._buffer.append(event)

            dead: list[queue.Queue[dict]] = []
            for q in self._subscribers:
                try:
                    q.put_nowait(event)
                except queue.Full:
                    dead.append(q)
            for q in dead:
                self._subscribers.remove(q)
                logger.info("Dropped unresponsive subscriber (queue full)")

        # Log outside the lock (avoids holding lock during I/O)
        extra = ""
        if "duration_s" in kw:
            extra = f" ({kw['duration_s']:.2f}s)"
        elif "error" in kw:
            extra = f" error={str(kw['error'])[:80]}"
        logger.debug("event %s key=%s%s", event_type, key or "-", extra)

        return event

    # ── Subscribing ─────────────────────────────────────────────

    def subscribe(
        self,
        *,
        since: int = 0,
        timeout: float | None = None,
    ) -> Generator[dict, None, None]:
        """Yield events as they are published.

        Parameters
        ----------
        since : int
            Replay buffered events with ``seq > since`` first.
        timeout : float | None
            Stop after this many seconds without an event.  None waits forever.
        """
        q: queue.Queue[dict] = queue.Queue(maxsize=self._subscriber_queue_size)
        with self._lock:
            if since:
                for event in self._buffer:
                    if event["seq"] > since:
                        try:
                            q.put_nowait(event)
                        except queue.Full:
                            break
            self._subscribers.append(q)

        try:
            while True:
                try:
                    yield q.get(timeout=timeout)
                except queue.Empty:
                    return
        finally:
            with self._lock:
                if q in self._subscribers:
                    self._subscribers.remove(q)

    # ── Replay ──────────────────────────────────────────────────

    def history(self, event_type: str | None = None, *, key: str | None = None) -> list[dict]:
        """Buffered events, oldest first, optionally filtered."""
        with self._lock:
            events = list(self._buffer)
        if event_type is not None:
            events = [e for e in events if e["type"] == event_type]
        if key is not None:
            events = [e for e in events if e["key"] == key]
        return events
