"""
Unit tests for cancellation contexts and the retry helper.
"""

import threading
import time
import unittest

from sdpctl.context import RunContext
from sdpctl.errors import CanceledByContext, TokenExpiredError, TransportError
from sdpctl.retry import Classification, RetryPolicy, retry

FAST = RetryPolicy(0, 1, 0, 0, 60)


class TestRunContext(unittest.TestCase):
    """Test RunContext cancellation and deadlines."""

    def test_cancel_propagates_to_children(self):
        """Test canceling a parent cancels its children, but not the reverse."""
        root = RunContext()
        child = root.child()
        grandchild = child.child()
        child.cancel("stop")
        self.assertFalse(root.canceled)
        self.assertTrue(grandchild.canceled)
        self.assertEqual(grandchild.reason, "stop")

    def test_child_of_canceled_parent(self):
        root = RunContext()
        root.cancel("gone")
        self.assertTrue(root.child().canceled)

    def test_finished_children_are_detached(self):
        """Test per-appliance contexts do not pile up on a long-lived root."""
        root = RunContext()
        for _ in range(50):
            with root.with_timeout(60) as ctx:
                self.assertFalse(ctx.canceled)
        self.assertEqual(root._children, [])

        kept = root.with_timeout(60)
        canceled = root.with_timeout(60)
        canceled.cancel("done")
        self.assertEqual(root._children, [kept])

        root.cancel("stop")
        self.assertTrue(kept.canceled)
        self.assertEqual(root._children, [])

    def test_deadline(self):
        """Test a deadline in the past cancels the context."""
        ctx = RunContext().with_timeout(0)
        self.assertTrue(ctx.canceled)
        self.assertEqual(ctx.reason, "deadline exceeded")
        with self.assertRaises(CanceledByContext):
            ctx.check()

    def test_child_inherits_earlier_deadline(self):
        parent = RunContext().with_timeout(10)
        child = parent.with_timeout(1000)
        self.assertLessEqual(child.remaining(), 10)

    def test_sleep_wakes_on_cancel(self):
        """Test sleep returns early when another thread cancels."""
        ctx = RunContext()
        threading.Timer(0.05, ctx.cancel).start()
        start = time.monotonic()
        with self.assertRaises(CanceledByContext):
            ctx.sleep(5)
        self.assertLess(time.monotonic() - start, 2)


class TestRetry(unittest.TestCase):
    """Test retry classification and exhaustion."""

    def test_retries_until_success(self):
        attempts = []

        def op():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransportError("flaky")
            return "ok"

        self.assertEqual(retry(FAST, op), "ok")
        self.assertEqual(len(attempts), 3)

    def test_permanent_error_is_not_retried(self):
        attempts = []

        def op():
            attempts.append(1)
            raise ValueError("bad")

        with self.assertRaises(ValueError):
            retry(FAST, op)
        self.assertEqual(len(attempts), 1)

    def test_terminal_error_is_not_retried(self):
        def classify(exc):
            if isinstance(exc, TokenExpiredError):
                return Classification.TERMINAL
            return Classification.RETRYABLE

        def op():
            raise TokenExpiredError("expired")

        with self.assertRaises(TokenExpiredError):
            retry(FAST, op, classify)

    def test_gives_up_after_max_elapsed(self):
        """Test the last error is raised once the policy is exhausted."""
        policy = RetryPolicy(0.01, 1, 0, 0.01, 0.05)

        def op():
            raise TransportError("down")

        with self.assertRaises(TransportError):
            retry(policy, op)

    def test_canceled_context_stops_retry(self):
        ctx = RunContext()
        ctx.cancel()
        with self.assertRaises(CanceledByContext):
            retry(FAST, lambda: "never", ctx=ctx)

    def test_intervals_are_capped(self):
        policy = RetryPolicy(1.0, 2.0, 0.0, 5.0, 60)
        intervals = policy.intervals()
        values = [next(intervals) for _ in range(5)]
        self.assertEqual(values, [1.0, 2.0, 4.0, 5.0, 5.0])


if __name__ == "__main__":
    unittest.main()
