"""
Split appliances by reachability using a stats snapshot.
"""

import logging
from typing import List, Tuple

from sdpctl.errors import ControllerOfflineError, LogServerOfflineError, MultiError
from sdpctl.models import Appliance, Function, StatsSnapshot

logger = logging.getLogger(__name__)


def partition(
    appliances: List[Appliance], snapshot: StatsSnapshot
) -> Tuple[List[Appliance], List[Appliance], List[Appliance], MultiError]:
    """
    Partition appliances into online, offline and unknown.

    An offline Controller or LogServer blocks any upgrade, so each one is
    also reported in the returned aggregate. Other offline appliances are
    only returned in the offline list.

    Args:
        appliances: Appliances to classify
        snapshot: Stats snapshot correlated by appliance id

    Returns:
        Tuple of (online, offline, unknown, fatal errors). The aggregate is
        empty when nothing blocks the operation.
    """
    online: List[Appliance] = []
    offline: List[Appliance] = []
    unknown: List[Appliance] = []
    fatal = MultiError()

    for a in appliances:
        status = snapshot.get(a.id)
        if status is None:
            logger.debug(f"No stats found for {a.name}")
            unknown.append(a)
            continue
        if status.is_online:
            online.append(a)
            continue

        offline.append(a)
        if a.is_enabled(Function.CONTROLLER):
            fatal.append(
                ControllerOfflineError(
                    f"cannot start the operation since a Controller {a.name!r} is offline"
                )
            )
        if a.is_enabled(Function.LOGSERVER):
            fatal.append(
                LogServerOfflineError(
                    f"cannot start the operation since a LogServer {a.name!r} is offline"
                )
            )
    return online, offline, unknown, fatal
