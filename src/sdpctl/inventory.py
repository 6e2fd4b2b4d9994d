"""
Queryable view of the appliances in a Collective.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sdpctl.clients import AdminRestClient
from sdpctl.context import RunContext
from sdpctl.errors import MultiError
from sdpctl.filters import ApplianceFilter, order_appliances
from sdpctl.models import (
    FUNCTION_ORDER,
    Appliance,
    Function,
    StatsSnapshot,
    UpgradeState,
)

logger = logging.getLogger(__name__)


class Inventory:
    """Lists, filters and snapshots the appliances behind one admin API."""

    def __init__(self, api: AdminRestClient, ctx: Optional[RunContext] = None):
        self.api = api
        self.ctx = ctx or RunContext()

    def list(
        self,
        appliance_filter: Optional[ApplianceFilter] = None,
        order_by: Optional[List[str]] = None,
        descending: bool = False,
        snapshot: Optional[StatsSnapshot] = None,
    ) -> Tuple[List[Appliance], List[Appliance]]:
        """
        List appliances matching a filter.

        Args:
            appliance_filter: Compiled filter, None keeps everything
            order_by: Sort keys, highest priority first (default name)
            descending: Reverse the final order
            snapshot: Stats used by version/status/state filters. Fetched
                when such a filter is present and no snapshot is given.

        Returns:
            Tuple of (included, filtered out), both sorted
        """
        appliances = self.api.list_appliances(self.ctx)
        logger.debug(f"Found {len(appliances)} appliance(s) in the Collective")

        appliance_filter = appliance_filter or ApplianceFilter([], [])
        statuses = {}
        if appliance_filter.needs_stats:
            if snapshot is None:
                snapshot, _ = self.stats()
            statuses = {e.id: e for e in snapshot.entries}

        included, filtered = appliance_filter.apply(appliances, statuses)
        return (
            order_appliances(included, order_by, descending),
            order_appliances(filtered, order_by, descending),
        )

    def stats(self) -> Tuple[StatsSnapshot, datetime]:
        """Fetch one unfiltered stats snapshot and the time it was taken."""
        snapshot = self.api.stats(self.ctx)
        return snapshot, snapshot.fetched_at

    def upgrade_status_map(
        self, appliances: List[Appliance], max_workers: int = 10
    ) -> Dict[str, UpgradeState]:
        """
        Read the upgrade sub-status of several appliances concurrently.

        Returns:
            Mapping of appliance id to UpgradeState

        Raises:
            MultiError: One entry per appliance whose status could not be read
        """
        result: Dict[str, UpgradeState] = {}
        if not appliances:
            return result

        errors = MultiError()
        workers = max(1, min(max_workers, len(appliances)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.api.upgrade_status, a.id, self.ctx): a
                for a in appliances
            }
            for fut in as_completed(futures):
                appliance = futures[fut]
                try:
                    result[appliance.id] = fut.result()
                except Exception as e:
                    logger.error(f"Could not read upgrade status of {appliance.name}: {e}")
                    errors.append(e)
        err = errors.error_or_none()
        if err is not None:
            raise err
        return result


def group_by_function(appliances: List[Appliance]) -> Dict[Function, List[Appliance]]:
    """Group appliances by enabled function. An appliance may be in several groups."""
    groups: Dict[Function, List[Appliance]] = {}
    for a in appliances:
        for fn in a.enabled_functions():
            groups.setdefault(fn, []).append(a)
    return groups


def active_functions(appliance: Appliance) -> str:
    return ", ".join(fn.value for fn in FUNCTION_ORDER if appliance.is_enabled(fn))


def use_primary_peer_version(
    api: AdminRestClient, primary: Appliance, configured: int = 0
) -> bool:
    """
    Point the client at the peer API version the primary Controller declares.

    An explicitly configured version always wins.

    Returns:
        True when the client version now comes from configuration or the
        primary Controller, False when the primary declares none
    """
    if configured:
        api.peer_version = configured
        return True
    if not primary.peer_version:
        return False
    if primary.peer_version != api.peer_version:
        logger.debug(f"Using peer API version {primary.peer_version} of {primary.name}")
    api.peer_version = primary.peer_version
    return True
