# transfer_common/events.py
"""
State-change events from the engine and its worker threads.

The engine never calls into presentation code. It appends small dicts
(``{'type': ..., 'time': ..., ...}``) to a bounded channel which a dashboard or
CLI drains at its own pace.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque

from transfer_common.protocol import MAX_EVENTS


class EventChannel:
    def __init__(self, maxlen: int = MAX_EVENTS):
        self._events: deque[dict] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)

    def publish(self, event_type: str, **fields) -> dict:
        event = {'type': event_type, 'time': time.time(), **fields}
        with self._cond:
            self._events.append(event)
            self._cond.notify_all()
        return event

    def drain(self) -> list[dict]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    def wait_for(self, predicate, timeout: float) -> dict | None:
        """
        Block until an event matching ``predicate`` arrives, consuming every
        event up to and including it. Returns None on timeout.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                while self._events:
                    event = self._events.popleft()
                    if predicate(event):
                        return event
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def __len__(self):
        with self._lock:
            return len(self._events)


class EventChannelHandler(logging.Handler):
    """Mirrors log records into an EventChannel as 'log' events."""

    def __init__(self, channel: EventChannel, level=logging.INFO):
        super().__init__(level)
        self.channel = channel
        self.setFormatter(logging.Formatter("%(asctime)s - %(message)s", "%H:%M:%S"))

    def emit(self, record):
        try:
            self.channel.publish('log', level=record.levelname, message=self.format(record))
        except Exception:
            self.handleError(record)
