"""
Unit tests for inventory listing and reachability partitioning.
"""

import unittest

from fakes import FakeCollective, make_appliance
from sdpctl import availability
from sdpctl.errors import (
    ControllerOfflineError,
    LogServerOfflineError,
    MultiError,
    TransportError,
)
from sdpctl.filters import ApplianceFilter
from sdpctl.inventory import Inventory, active_functions, group_by_function
from sdpctl.models import Function, UpgradeStatus


class TestInventory(unittest.TestCase):
    """Test Inventory against the in-memory Collective."""

    def setUp(self):
        self.ctrl = make_appliance("c1", "controller", (Function.CONTROLLER, Function.LOGFORWARDER))
        self.gw = make_appliance("g1", "gateway")
        self.log = make_appliance("l1", "logserver", (Function.LOGSERVER,))
        self.api = FakeCollective([self.gw, self.log, self.ctrl])
        self.inventory = Inventory(self.api)

    def test_list_sorted_and_filtered(self):
        included, filtered = self.inventory.list(ApplianceFilter.parse(["function=gateway"]))
        self.assertEqual([a.name for a in included], ["gateway"])
        self.assertEqual([a.name for a in filtered], ["controller", "logserver"])

    def test_list_fetches_stats_for_version_filter(self):
        """Test a version filter triggers one stats call."""
        self.api.stats_entries["g1"]["version"] = "6.2.0"
        included, _ = self.inventory.list(ApplianceFilter.parse(["version=6\\.2"]))
        self.assertEqual([a.name for a in included], ["gateway"])
        self.assertEqual(len(self.api.calls_named("stats")), 1)

    def test_upgrade_status_map(self):
        self.api.set_upgrade("g1", UpgradeStatus.READY, "6.2.0")
        result = self.inventory.upgrade_status_map([self.ctrl, self.gw])
        self.assertEqual(result["g1"].status, UpgradeStatus.READY)
        self.assertEqual(result["c1"].status, UpgradeStatus.IDLE)

    def test_upgrade_status_map_aggregates_errors(self):
        """Test every failed read is reported."""

        def broken(appliance_id, ctx=None, timeout=None):
            raise TransportError(f"{appliance_id} unreachable")

        self.api.upgrade_status = broken
        with self.assertRaises(MultiError) as cm:
            self.inventory.upgrade_status_map([self.ctrl, self.gw, self.log])
        self.assertEqual(len(cm.exception), 3)

    def test_group_by_function(self):
        groups = group_by_function([self.ctrl, self.gw, self.log])
        self.assertEqual([a.name for a in groups[Function.LOGFORWARDER]], ["controller"])
        self.assertEqual(len(groups[Function.GATEWAY]), 1)
        self.assertEqual(active_functions(self.ctrl), "Controller, LogForwarder")


class TestAvailability(unittest.TestCase):
    """Test availability.partition."""

    def setUp(self):
        self.ctrl1 = make_appliance("c1", "controller-one", (Function.CONTROLLER,))
        self.ctrl2 = make_appliance("c2", "controller-two", (Function.CONTROLLER,))
        self.gw = make_appliance("g1", "gateway")
        self.log = make_appliance("l1", "logserver", (Function.LOGSERVER,))
        self.api = FakeCollective([self.ctrl1, self.ctrl2, self.gw, self.log])

    def test_all_online(self):
        online, offline, unknown, fatal = availability.partition(
            self.api.appliances, self.api.stats()
        )
        self.assertEqual(len(online), 4)
        self.assertFalse(fatal)

    def test_offline_gateway_is_not_fatal(self):
        self.api.set_offline("g1")
        online, offline, unknown, fatal = availability.partition(
            self.api.appliances, self.api.stats()
        )
        self.assertEqual([a.name for a in offline], ["gateway"])
        self.assertIsNone(fatal.error_or_none())

    def test_offline_controller_and_logserver_are_fatal(self):
        """Test each offline Controller or LogServer is named in the aggregate."""
        self.api.set_offline("c2")
        self.api.set_offline("l1")
        _, _, _, fatal = availability.partition(self.api.appliances, self.api.stats())
        self.assertEqual(len(fatal), 2)
        kinds = {type(e) for e in fatal.errors}
        self.assertEqual(kinds, {ControllerOfflineError, LogServerOfflineError})
        self.assertIn("controller-two", str(fatal))

    def test_missing_stats_is_unknown(self):
        snapshot = self.api.stats()
        snapshot.entries = [e for e in snapshot.entries if e.id != "g1"]
        _, _, unknown, _ = availability.partition(self.api.appliances, snapshot)
        self.assertEqual([a.name for a in unknown], ["gateway"])


if __name__ == "__main__":
    unittest.main()
