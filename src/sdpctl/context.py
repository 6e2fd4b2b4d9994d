"""
Cooperative cancellation shared by every component of a run.
"""

import threading
import time
from typing import List, Optional

from sdpctl.errors import CanceledByContext


class RunContext:
    """
    Cancellation handle with an optional deadline.

    A child context is canceled together with its parent, but canceling a
    child leaves the parent running.
    """

    def __init__(
        self, parent: Optional["RunContext"] = None, deadline: Optional[float] = None
    ):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._children: List["RunContext"] = []
        self.parent = parent
        self.deadline = deadline
        if parent is not None:
            if parent.deadline is not None and (
                deadline is None or parent.deadline < deadline
            ):
                self.deadline = parent.deadline
            parent._add_child(self)

    def _add_child(self, child: "RunContext") -> None:
        with self._lock:
            canceled = self._event.is_set()
            if not canceled:
                self._children.append(child)
        if canceled:
            child.cancel(self._reason or "context canceled")

    def _remove_child(self, child: "RunContext") -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def release(self) -> None:
        """Detach from the parent. Call once the context is no longer used."""
        if self.parent is not None:
            self.parent._remove_child(self)

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def child(self) -> "RunContext":
        return RunContext(parent=self)

    def with_timeout(self, seconds: float) -> "RunContext":
        return RunContext(parent=self, deadline=time.monotonic() + seconds)

    def cancel(self, reason: str = "context canceled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)
            self._children.clear()
        for c in children:
            c.cancel(reason)
        self.release()

    @property
    def canceled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return "deadline exceeded"
        return None

    def err(self) -> Optional[CanceledByContext]:
        reason = self.reason
        return CanceledByContext(reason) if reason else None

    def check(self) -> None:
        """Raise CanceledByContext if the context is done."""
        err = self.err()
        if err is not None:
            raise err

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def sleep(self, seconds: float) -> None:
        """Sleep, waking up early and raising if the context is canceled."""
        self.check()
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            self.check()
            return
        if self._event.wait(seconds):
            self.check()
