"""
Retry policies and the single retry helper used by every wait loop.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from sdpctl.context import RunContext
from sdpctl.errors import CanceledByContext, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Classification(Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, bounded by a total elapsed time."""

    initial: float
    multiplier: float
    randomization: float
    max_interval: float
    max_elapsed: float

    def intervals(self):
        """Yield jittered sleep intervals, forever."""
        interval = self.initial
        while True:
            delta = self.randomization * interval
            yield random.uniform(interval - delta, interval + delta)
            interval = min(interval * self.multiplier, self.max_interval)

    def with_max_elapsed(self, seconds: float) -> "RetryPolicy":
        return RetryPolicy(
            self.initial,
            self.multiplier,
            self.randomization,
            self.max_interval,
            seconds,
        )


UPGRADE_STATUS_POLICY = RetryPolicy(1.0, 2.0, 0.7, 10.0, 30 * 60)
APPLIANCE_STATE_POLICY = RetryPolicy(10.0, 1.5, 0.7, 20.0, 10 * 60)
CHANGE_POLICY = RetryPolicy(0.5, 1.5, 0.5, 60.0, 15 * 60)
ENABLE_CONTROLLER_POLICY = RetryPolicy(10.0, 1.0, 0.0, 120.0, 15 * 60)
COMPLETE_CALL_POLICY = RetryPolicy(0.5, 1.5, 0.5, 60.0, 15 * 60)


def retry_transport(exc: BaseException) -> Classification:
    """Default classifier: transport errors are retried, the rest are permanent."""
    if isinstance(exc, TransportError):
        return Classification.RETRYABLE
    return Classification.PERMANENT


def retry(
    policy: RetryPolicy,
    op: Callable[[], T],
    classify: Callable[[BaseException], Classification] = retry_transport,
    ctx: Optional[RunContext] = None,
) -> T:
    """
    Call op until it succeeds, fails permanently or the policy gives up.

    Args:
        policy: Backoff policy
        op: Zero-argument callable
        classify: Decides whether an exception is retried
        ctx: Cancellation context

    Returns:
        The value returned by op

    Raises:
        The last exception raised by op, or CanceledByContext
    """
    ctx = ctx or RunContext()
    start = time.monotonic()
    intervals = policy.intervals()
    while True:
        ctx.check()
        try:
            return op()
        except CanceledByContext:
            raise
        except Exception as e:
            kind = classify(e)
            if kind is not Classification.RETRYABLE:
                raise
            delay = next(intervals)
            elapsed = time.monotonic() - start
            if elapsed + delay > policy.max_elapsed:
                logger.debug(f"Giving up after {elapsed:.1f}s: {e}")
                raise
            logger.debug(f"Retrying in {delay:.1f}s: {e}")
            ctx.sleep(delay)
