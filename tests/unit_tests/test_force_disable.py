"""
Unit tests for force-disable-controller.
"""

import unittest

from fakes import FAST, PRIMARY_HOST, FakeCollective, make_appliance, make_config
from sdpctl.driver import ApplianceDriver
from sdpctl.errors import (
    ChangeFailedError,
    ConfigError,
    IllegalOperationError,
    TransportError,
)
from sdpctl.force_disable import ForceDisableCoordinator, resolve_controllers
from sdpctl.models import Function
from sdpctl.progress import NullSink


def controllers():
    return [
        make_appliance("c1", "ctrl1", (Function.CONTROLLER,), hostname=PRIMARY_HOST),
        make_appliance("c2", "ctrl2", (Function.CONTROLLER,)),
        make_appliance("c3", "ctrl3", (Function.CONTROLLER,)),
        make_appliance("g1", "gw1"),
    ]


class TestResolveControllers(unittest.TestCase):
    """Test hostname resolution."""

    def test_resolve(self):
        resolved = resolve_controllers(controllers(), ["CTRL3.example.com", "ctrl3.example.com"])
        self.assertEqual([a.id for a in resolved], ["c3"])

    def test_gateway_is_not_a_controller(self):
        with self.assertRaises(ConfigError) as cm:
            resolve_controllers(controllers(), ["gw1.example.com", "nope.example.com"])
        self.assertIn("gw1.example.com, nope.example.com", str(cm.exception))


class TestForceDisableCoordinator(unittest.TestCase):
    """Test announce and apply."""

    def setUp(self):
        self.api = FakeCollective(controllers())
        self.questions = []

    def coordinator(self, **config):
        sink = NullSink()
        coordinator = ForceDisableCoordinator(
            self.api, make_config(**config), sink=sink, ask=self.questions.append, stagger=0
        )
        coordinator.driver = ApplianceDriver(
            self.api, coordinator.ctx, sink, change_policy=FAST, status_policy=FAST
        )
        return coordinator

    def test_announce_and_apply(self):
        """Test every remaining Controller is told and re-allocates IP pools."""
        result = self.coordinator().run(["ctrl3.example.com"])
        announced = sorted(self.api.calls_named("force_disable_controllers"))
        self.assertEqual(
            announced,
            [
                ("force_disable_controllers", "ctrl1.example.com", ("c3",)),
                ("force_disable_controllers", "ctrl2.example.com", ("c3",)),
            ],
        )
        repartitioned = sorted(c[1] for c in self.api.calls_named("repartition_ip_allocations"))
        self.assertEqual(repartitioned, ["c1", "c2"])
        self.assertEqual(result["disabled"], ["ctrl3"])
        self.assertEqual(sorted(result["announced"]), ["ctrl1", "ctrl2"])
        self.assertEqual(result["offline"], [])
        self.assertEqual(len(self.questions), 1)

    def test_offline_controllers_are_confirmed(self):
        self.api.offline_controllers["ctrl1.example.com"] = ["c3"]
        result = self.coordinator().run(["ctrl3.example.com"])
        self.assertEqual(result["offline"], ["ctrl3"])
        self.assertEqual(len(self.questions), 2)

    def test_primary_is_rejected(self):
        with self.assertRaises(IllegalOperationError):
            self.coordinator().run([PRIMARY_HOST])
        self.assertEqual(self.api.calls_named("force_disable_controllers"), [])

    def test_unknown_hostname(self):
        with self.assertRaises(ConfigError):
            self.coordinator().run(["ctrl9.example.com"])

    def test_old_peer_version(self):
        """Test the peer version declared by the primary Controller gates the command."""
        self.api.appliances[0] = make_appliance(
            "c1", "ctrl1", (Function.CONTROLLER,), hostname=PRIMARY_HOST, peer_version=17
        )
        with self.assertRaises(ConfigError) as cm:
            self.coordinator(peer_version=0).run(["ctrl3.example.com"])
        self.assertIn("uses 17", str(cm.exception))
        self.assertEqual(self.api.peer_version, 17)
        self.assertEqual(self.api.calls, [("list_appliances",)])

    def test_configured_peer_version_wins(self):
        self.api.appliances[0] = make_appliance(
            "c1", "ctrl1", (Function.CONTROLLER,), hostname=PRIMARY_HOST, peer_version=17
        )
        self.coordinator(peer_version=19).run(["ctrl3.example.com"])
        self.assertEqual(self.api.peer_version, 19)
        self.assertEqual(len(self.api.calls_named("force_disable_controllers")), 2)

    def test_announce_failure_stops_apply(self):
        """Test a failed announce cancels the IP re-allocation."""
        self.api.offline_controllers["ctrl2.example.com"] = None
        with self.assertRaises(TransportError):
            self.coordinator().run(["ctrl3.example.com"])
        self.assertEqual(self.api.calls_named("repartition_ip_allocations"), [])

    def test_failed_change(self):
        self.api.failed_changes.add("ip-c2")
        with self.assertRaises(ChangeFailedError) as cm:
            self.coordinator().run(["ctrl3.example.com"])
        self.assertIn("ctrl2", str(cm.exception))


if __name__ == "__main__":
    unittest.main()
