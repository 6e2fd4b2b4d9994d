"""
Appgate SDP Collective upgrade tool.
"""

from sdpctl.clients import AdminRestClient
from sdpctl.config import SdpctlConfig
from sdpctl.context import RunContext
from sdpctl.errors import MultiError, SdpctlError
from sdpctl.force_disable import ForceDisableCoordinator
from sdpctl.log_utils import setup_logging
from sdpctl.models import Appliance, ApplianceStatus, UpgradeResult
from sdpctl.plan import UpgradePlan, build_upgrade_plan
from sdpctl.upgrader import FleetUpgrader

__all__ = [
    "AdminRestClient",
    "SdpctlConfig",
    "RunContext",
    "SdpctlError",
    "MultiError",
    "ForceDisableCoordinator",
    "setup_logging",
    "Appliance",
    "ApplianceStatus",
    "UpgradeResult",
    "UpgradePlan",
    "build_upgrade_plan",
    "FleetUpgrader",
]
