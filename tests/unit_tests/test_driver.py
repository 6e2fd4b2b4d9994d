"""
Unit tests for the per-appliance driver.
"""

import unittest

from fakes import FAST, SHORT, FakeCollective, make_appliance
from sdpctl.context import RunContext
from sdpctl.driver import ApplianceDriver
from sdpctl.errors import (
    APIError,
    CanceledByContext,
    ChangeFailedError,
    NotFoundError,
    TokenExpiredError,
    TransportError,
    UpgradeFailedError,
    WaitTimeoutError,
)
from sdpctl.models import READY_STATES, UpgradeState, UpgradeStatus
from sdpctl.progress import ProgressSink


def fast_driver(api, policy=FAST, ctx=None, sink=None):
    return ApplianceDriver(
        api,
        ctx or RunContext(),
        sink or ProgressSink(),
        status_policy=policy,
        state_policy=policy,
        change_policy=policy,
        call_policy=policy,
    )


class TestWaits(unittest.TestCase):
    """Test polling waits."""

    def setUp(self):
        self.gw = make_appliance("g1", "gateway")
        self.api = FakeCollective([self.gw])

    def test_wait_for_upgrade_status_sequence(self):
        """Test the wait follows the status until it is wanted."""
        sequence = iter(
            [
                TransportError("rebooting"),
                UpgradeState(UpgradeStatus.INSTALLING, "", "installing"),
                UpgradeState(UpgradeStatus.IDLE, "", "idle"),
            ]
        )

        def upgrade_status(appliance_id, ctx=None, timeout=None):
            item = next(sequence)
            if isinstance(item, Exception):
                raise item
            return item

        self.api.upgrade_status = upgrade_status
        sink = ProgressSink()
        driver = fast_driver(self.api, sink=sink)
        state = driver.wait_for_upgrade_status(self.gw, {UpgradeStatus.IDLE}, {UpgradeStatus.FAILED})
        self.assertEqual(state.status, UpgradeStatus.IDLE)
        history = sink.trackers["gateway"].history
        self.assertEqual(history, ["no response, appliance offline", "installing", "idle"])

    def test_unwanted_status_fails(self):
        """Test an unwanted status ends the wait with the appliance details."""
        self.api.set_upgrade("g1", UpgradeStatus.FAILED, "signature mismatch")
        driver = fast_driver(self.api)
        with self.assertRaises(UpgradeFailedError) as cm:
            driver.wait_for_upgrade_status(self.gw, {UpgradeStatus.READY}, {UpgradeStatus.FAILED})
        self.assertIn("command failed on gateway: status failed", str(cm.exception))
        self.assertIn("signature mismatch", str(cm.exception))

    def test_timeout(self):
        self.api.set_upgrade("g1", UpgradeStatus.DOWNLOADING)
        driver = fast_driver(self.api, policy=SHORT)
        with self.assertRaises(WaitTimeoutError):
            driver.wait_for_upgrade_status(self.gw, {UpgradeStatus.READY}, set())

    def test_token_expiry_is_terminal(self):
        calls = []

        def upgrade_status(appliance_id, ctx=None, timeout=None):
            calls.append(1)
            raise TokenExpiredError("expired")

        self.api.upgrade_status = upgrade_status
        with self.assertRaises(TokenExpiredError):
            fast_driver(self.api).wait_for_upgrade_status(self.gw, {UpgradeStatus.IDLE}, set())
        self.assertEqual(len(calls), 1)

    def test_client_error_fails_wait_immediately(self):
        """Test a 404 while waiting for the image is not polled until the deadline."""
        calls = []

        def upgrade_status(appliance_id, ctx=None, timeout=None):
            calls.append(1)
            raise NotFoundError(404, "appliance not found")

        self.api.upgrade_status = upgrade_status
        sink = ProgressSink()
        with self.assertRaises(NotFoundError):
            fast_driver(self.api, sink=sink).wait_prepared(self.gw)
        self.assertEqual(len(calls), 1)
        self.assertTrue(sink.trackers["gateway"].failed)

    def test_server_error_keeps_waiting(self):
        """Test a 503 during a wait is retried."""
        responses = [
            APIError(503, "unavailable"),
            UpgradeState(UpgradeStatus.READY, "6.2.1", "ready"),
        ]

        def upgrade_status(appliance_id, ctx=None, timeout=None):
            item = responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        self.api.upgrade_status = upgrade_status
        state = fast_driver(self.api).wait_prepared(self.gw)
        self.assertEqual(state.details, "6.2.1")

    def test_cancel_stops_wait(self):
        ctx = RunContext()
        ctx.cancel("stop")
        self.api.set_upgrade("g1", UpgradeStatus.DOWNLOADING)
        with self.assertRaises(CanceledByContext):
            fast_driver(self.api).wait_for_upgrade_status(
                self.gw, {UpgradeStatus.READY}, set(), ctx=ctx
            )

    def test_unknown_state_keeps_polling(self):
        """Test a state this tool does not know is not treated as ready."""
        self.api.stats_entries["g1"]["state"] = "upgrading_firmware"
        with self.assertRaises(WaitTimeoutError):
            fast_driver(self.api, policy=SHORT).wait_for_appliance_state(self.gw, READY_STATES)

    def test_wait_for_change_failure(self):
        self.api.failed_changes.add("chg-1")
        with self.assertRaises(ChangeFailedError):
            fast_driver(self.api).wait_for_change(self.gw, "chg-1")


class TestOperations(unittest.TestCase):
    """Test prepare, complete and cancel flows."""

    def setUp(self):
        self.gw = make_appliance("g1", "gateway")
        self.api = FakeCollective([self.gw], version="6.1.0")
        self.driver = fast_driver(self.api)
        self.url = "controller://ctrl/appgate-6.2.1-1.img.zip"

    def test_prepare(self):
        state = self.driver.prepare(self.gw, self.url)
        self.assertEqual(state.status, UpgradeStatus.READY)
        self.assertEqual(self.api.calls_named("prepare_upgrade"), [("prepare_upgrade", "g1", self.url)])
        self.assertEqual(self.api.calls_named("cancel_upgrade"), [])

    def test_prepare_cancels_previous_upgrade(self):
        """Test an in-flight prepare is canceled before a new one starts."""
        self.api.set_upgrade("g1", UpgradeStatus.DOWNLOADING)
        self.driver.prepare(self.gw, self.url)
        names = [c[0] for c in self.api.calls if c[0] in ("cancel_upgrade", "prepare_upgrade")]
        self.assertEqual(names, ["cancel_upgrade", "prepare_upgrade"])

    def test_prepare_failure(self):
        self.api.fail_prepare["g1"] = "bad image"
        with self.assertRaises(UpgradeFailedError):
            self.driver.prepare(self.gw, self.url)

    def test_wait_prepared_completes_tracker(self):
        sink = ProgressSink()
        driver = fast_driver(self.api, sink=sink)
        self.api.set_upgrade("g1", UpgradeStatus.READY, "6.2.1")
        driver.wait_prepared(self.gw)
        self.assertTrue(sink.trackers["gateway"].done)
        self.assertFalse(sink.trackers["gateway"].failed)

    def test_complete_retries_transport_errors(self):
        """Test a retried complete survives a dropped connection."""
        attempts = []
        original = self.api.complete_upgrade

        def flaky(appliance_id, switch_partition, ctx=None):
            attempts.append(1)
            if len(attempts) == 1:
                raise TransportError("reset")
            return original(appliance_id, switch_partition, ctx)

        self.api.complete_upgrade = flaky
        self.driver.complete(self.gw, True, retried=True)
        self.assertEqual(len(attempts), 2)

    def test_complete_not_retried_by_default(self):
        def broken(appliance_id, switch_partition, ctx=None):
            raise TransportError("reset")

        self.api.complete_upgrade = broken
        with self.assertRaises(TransportError):
            self.driver.complete(self.gw, True)

    def test_cancel(self):
        self.api.set_upgrade("g1", UpgradeStatus.READY, "6.2.1")
        state = self.driver.cancel(self.gw)
        self.assertEqual(state.status, UpgradeStatus.IDLE)

    def test_volume_check(self):
        """Test an appliance that booted the same partition is a failure."""
        before = self.api.stats().get("g1")
        self.api.stuck_volume.add("g1")
        self.api.set_upgrade("g1", UpgradeStatus.READY, "6.2.1")
        self.api.complete_upgrade("g1", True)
        with self.assertRaises(UpgradeFailedError) as cm:
            self.driver.check_volume_switched(self.gw, before)
        self.assertIn("never switched partition", str(cm.exception))

        self.api.stuck_volume.clear()
        self.api.complete_upgrade("g1", True)
        self.driver.check_volume_switched(self.gw, before)


if __name__ == "__main__":
    unittest.main()
