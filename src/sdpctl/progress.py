"""
Per-appliance progress trackers and the sinks that render them.
"""

import logging
import sys
import threading
import time
from typing import Dict, List, Optional, TextIO

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 0.120


class Tracker:
    """
    Latest-wins status of one appliance in a run.

    Trackers are owned by the orchestrator and have no thread of their own.
    Updates from any thread are forwarded to the sink that created them.
    """

    def __init__(self, name: str, sink: "ProgressSink"):
        self.name = name
        self._sink = sink
        self._lock = threading.Lock()
        self.message = ""
        self.done = False
        self.failed = False
        self.history: List[str] = []

    def update(self, message: str) -> None:
        with self._lock:
            if self.done:
                return
            if message == self.message:
                return
            self.message = message
            self.history.append(message)
        logger.debug(f"{self.name}: {message}")
        self._sink.render(self)

    def fail(self, reason: str) -> None:
        with self._lock:
            if self.done:
                return
            self.done = True
            self.failed = True
            self.message = reason
            self.history.append(reason)
        self._sink.render(self, final=True)

    def complete(self, message: str = "done") -> None:
        with self._lock:
            if self.done:
                return
            self.done = True
            self.message = message
            self.history.append(message)
        self._sink.render(self, final=True)


class ProgressSink:
    """Creates trackers and renders their state. The base class draws nothing."""

    def __init__(self):
        self._lock = threading.Lock()
        self.trackers: Dict[str, Tracker] = {}

    def tracker(self, name: str) -> Tracker:
        with self._lock:
            t = self.trackers.get(name)
            if t is None or t.done:
                t = Tracker(name, self)
                self.trackers[name] = t
            return t

    def render(self, tracker: Tracker, final: bool = False) -> None:
        pass


class NullSink(ProgressSink):
    """Sink for CI mode and tests."""


class TextSink(ProgressSink):
    """
    Writes one line per tracker change to a stream.

    Intermediate updates of the same tracker are dropped when they arrive
    faster than refresh_interval. Final states are always written.
    """

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
    ):
        super().__init__()
        self.stream = stream or sys.stdout
        self.refresh_interval = refresh_interval
        self._last: Dict[str, float] = {}
        self._write_lock = threading.Lock()

    def render(self, tracker: Tracker, final: bool = False) -> None:
        now = time.monotonic()
        with self._write_lock:
            last = self._last.get(tracker.name)
            if not final and last is not None and now - last < self.refresh_interval:
                return
            self._last[tracker.name] = now
            if final:
                mark = "✗" if tracker.failed else "✓"
                line = f"{mark} {tracker.name}: {tracker.message}"
            else:
                line = f"  {tracker.name}: {tracker.message}"
            self.stream.write(line + "\n")
            self.stream.flush()
