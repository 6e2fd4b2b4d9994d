"""
Upgrade plan builder.

A plan orders the appliances of one run: the primary Controller alone, the
additional Controllers as a group, LogServers and LogForwarders in their own
phase when crossing into 6.x, and the rest in batches that never take two
Gateways of the same site down together.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sdpctl import availability
from sdpctl.errors import (
    AmbiguousPrimaryController,
    NotReadyForCompleteError,
    PrimaryControllerNotFound,
    UnsupportedUpgradePathError,
    VersionParseError,
)
from sdpctl.filters import ApplianceFilter
from sdpctl.models import (
    Appliance,
    ApplianceStatus,
    Function,
    SkippedAppliance,
    SkipReason,
    StatsSnapshot,
    UpgradeState,
    UpgradeStatus,
)
from sdpctl.version import (
    UNKNOWN_VERSION,
    Version,
    check_upgrade_path,
    crosses_log_boundary,
    parse_version,
)

logger = logging.getLogger(__name__)

PREPARE = "prepare"
COMPLETE = "complete"


@dataclass
class PlannedAppliance:
    """An appliance in the plan with the versions it moves between."""

    appliance: Appliance
    current_version: Version
    target_version: Version
    status: ApplianceStatus

    @property
    def name(self) -> str:
        return self.appliance.name


@dataclass
class UpgradePlan:
    primary_controller: Optional[PlannedAppliance] = None
    additional_controllers: List[PlannedAppliance] = field(default_factory=list)
    logforwarders_and_servers: List[PlannedAppliance] = field(default_factory=list)
    batches: List[List[PlannedAppliance]] = field(default_factory=list)
    skipping: List[SkippedAppliance] = field(default_factory=list)
    primary: Optional[Appliance] = None

    def nothing_to_upgrade(self) -> bool:
        return (
            self.primary_controller is None
            and not self.additional_controllers
            and not self.logforwarders_and_servers
            and not self.batches
        )

    def all_planned(self) -> List[PlannedAppliance]:
        """Every planned appliance in execution order."""
        result: List[PlannedAppliance] = []
        if self.primary_controller is not None:
            result.append(self.primary_controller)
        result.extend(self.additional_controllers)
        result.extend(self.logforwarders_and_servers)
        for batch in self.batches:
            result.extend(batch)
        return result

    def skipped_names(self) -> List[str]:
        return [s.appliance.name for s in self.skipping]

    def summary_lines(self, title: str) -> List[str]:
        """Render the plan as banner-style report lines."""
        lines = ["=" * 70, title, "=" * 70]

        def table(heading: str, items: List[PlannedAppliance]) -> None:
            lines.append("")
            lines.append(heading)
            lines.append("-" * 70)
            lines.append(f"{'Appliance':<25} {'Site':<20} {'Current':<12} {'Target'}")
            for p in items:
                site = p.appliance.site_name or p.appliance.site or "-"
                lines.append(
                    f"{p.name:<25} {site:<20} {str(p.current_version):<12} {p.target_version}"
                )

        if self.primary_controller is not None:
            table("1. PRIMARY CONTROLLER", [self.primary_controller])
        step = 2
        if self.additional_controllers:
            table(f"{step}. ADDITIONAL CONTROLLERS", self.additional_controllers)
            step += 1
        if self.logforwarders_and_servers:
            table(f"{step}. LOGSERVERS AND LOGFORWARDERS", self.logforwarders_and_servers)
            step += 1
        for i, batch in enumerate(self.batches, start=1):
            table(f"{step}. BATCH {i}", batch)
            step += 1

        if self.skipping:
            lines.append("")
            lines.append("SKIPPED APPLIANCES")
            lines.append("-" * 70)
            lines.append(f"{'Appliance':<25} {'Reason'}")
            for s in self.skipping:
                lines.append(f"{s.appliance.name:<25} {s.reason.value}")
        lines.append("=" * 70)
        return lines


def find_primary_controller(
    appliances: List[Appliance], admin_hostname: str
) -> Appliance:
    """
    Find the enabled Controller the operator is connected to.

    Raises:
        PrimaryControllerNotFound: If no enabled Controller has that hostname
        AmbiguousPrimaryController: If several do
    """
    wanted = admin_hostname.lower()
    matches = []
    for a in appliances:
        if not a.is_enabled(Function.CONTROLLER):
            continue
        hostnames = {h.lower() for h in (a.admin_hostname, a.peer_hostname, a.hostname) if h}
        if wanted in hostnames:
            matches.append(a)
    if not matches:
        raise PrimaryControllerNotFound(
            f"unable to find the primary Controller with hostname {admin_hostname}"
        )
    if len(matches) > 1:
        names = ", ".join(sorted(a.name for a in matches))
        raise AmbiguousPrimaryController(
            f"the hostname {admin_hostname} is used by several Controllers ({names}). "
            "Rename the hostnames so each Controller has its own"
        )
    return matches[0]


def _gateway_batches(
    gateways_by_site: Dict[str, List[PlannedAppliance]],
    others: List[PlannedAppliance],
) -> List[List[PlannedAppliance]]:
    count = max((len(g) for g in gateways_by_site.values()), default=0)
    if count == 0 and others:
        count = 1
    batches: List[List[PlannedAppliance]] = [[] for _ in range(count)]

    for site in sorted(gateways_by_site):
        members = sorted(gateways_by_site[site], key=lambda p: p.name)
        for i, p in enumerate(members):
            batches[i].append(p)

    for p in sorted(others, key=lambda p: p.name):
        smallest = min(range(len(batches)), key=lambda i: (len(batches[i]), i))
        batches[smallest].append(p)

    for batch in batches:
        batch.sort(key=lambda p: p.name)
    return batches


def build_upgrade_plan(
    appliances: List[Appliance],
    snapshot: StatsSnapshot,
    admin_hostname: str,
    appliance_filter: Optional[ApplianceFilter] = None,
    target_version: Optional[Version] = None,
    upgrade_statuses: Optional[Dict[str, UpgradeState]] = None,
    force: bool = False,
    mode: str = PREPARE,
) -> UpgradePlan:
    """
    Build the execution plan for one prepare or complete run.

    Args:
        appliances: Every appliance in the Collective, sorted
        snapshot: Stats snapshot taken for this run
        admin_hostname: Hostname of the Controller the operator talks to
        appliance_filter: Include/exclude filter
        target_version: Version being prepared. In complete mode the target
            of each appliance is the version it was prepared with.
        upgrade_statuses: Upgrade sub-status per appliance id
        force: Prepare again even if the appliance already runs the target
        mode: PREPARE or COMPLETE

    Returns:
        The plan

    Raises:
        PrimaryControllerNotFound, AmbiguousPrimaryController: See
            find_primary_controller
        ControllerOfflineError, LogServerOfflineError: A Controller or
            LogServer is offline (aggregated when there are several)
    """
    upgrade_statuses = upgrade_statuses or {}
    plan = UpgradePlan()
    plan.primary = find_primary_controller(appliances, admin_hostname)

    online, offline, unknown, fatal = availability.partition(appliances, snapshot)
    err = fatal.error_or_none()
    if err is not None:
        raise err
    for a in offline:
        plan.skipping.append(SkippedAppliance(a, SkipReason.OFFLINE))
    for a in unknown:
        plan.skipping.append(SkippedAppliance(a, SkipReason.STATS_UNAVAILABLE))

    appliance_filter = appliance_filter or ApplianceFilter([], [])
    statuses = {e.id: e for e in snapshot.entries}
    included, filtered = appliance_filter.apply(online, statuses)
    for a in filtered:
        plan.skipping.append(SkippedAppliance(a, SkipReason.FILTERED))

    controllers: List[PlannedAppliance] = []
    log_phase: List[PlannedAppliance] = []
    gateways_by_site: Dict[str, List[PlannedAppliance]] = {}
    others: List[PlannedAppliance] = []

    for a in sorted(included, key=lambda x: x.name):
        status = statuses[a.id]
        try:
            current = parse_version(status.version)
        except VersionParseError as e:
            logger.warning(f"Skipping {a.name}: {e}")
            plan.skipping.append(SkippedAppliance(a, SkipReason.STATS_UNAVAILABLE, str(e)))
            continue

        upgrade = upgrade_statuses.get(a.id) or status.upgrade
        target = _planned_target(plan, a, current, upgrade, target_version, force, mode)
        if target is None:
            continue

        planned = PlannedAppliance(a, current, target, status)
        if a.is_enabled(Function.CONTROLLER):
            if a.id == plan.primary.id:
                plan.primary_controller = planned
            else:
                controllers.append(planned)
            continue
        if a.is_enabled(Function.GATEWAY):
            site = a.site or a.site_name
            gateways_by_site.setdefault(site, []).append(planned)
            continue
        if crosses_log_boundary(current, target) and (
            a.is_enabled(Function.LOGSERVER) or a.is_enabled(Function.LOGFORWARDER)
        ):
            log_phase.append(planned)
            continue
        others.append(planned)

    plan.additional_controllers = sorted(controllers, key=lambda p: p.name)
    plan.logforwarders_and_servers = sorted(log_phase, key=lambda p: p.name)
    plan.batches = _gateway_batches(gateways_by_site, others)
    return plan


def _planned_target(
    plan: UpgradePlan,
    appliance: Appliance,
    current: Version,
    upgrade: UpgradeState,
    target_version: Optional[Version],
    force: bool,
    mode: str,
) -> Optional[Version]:
    """Return the version an appliance moves to, or None after recording a skip."""

    def skip(reason: SkipReason, detail: str = "") -> None:
        plan.skipping.append(SkippedAppliance(appliance, reason, detail))

    if mode == COMPLETE:
        if upgrade.status not in (UpgradeStatus.READY, UpgradeStatus.SUCCESS):
            skip(SkipReason.NOT_PREPARED, upgrade.raw_status)
            return None
        try:
            return parse_version(upgrade.details)
        except VersionParseError as e:
            skip(SkipReason.NOT_PREPARED, str(e))
            return None

    if target_version is None:
        raise ValueError("target_version is required to plan a prepare")

    if upgrade.status in (UpgradeStatus.READY, UpgradeStatus.SUCCESS) and not force:
        try:
            prepared = parse_version(upgrade.details)
        except VersionParseError:
            prepared = None
        if prepared is not None and prepared.compare(target_version) >= 0:
            skip(SkipReason.ALREADY_PREPARED, str(prepared))
            return None

    cmp = current.compare(target_version)
    if cmp == 0 and not force:
        skip(SkipReason.ALREADY_PREPARED, f"already running {current}")
        return None
    if cmp > 0:
        skip(
            SkipReason.UNSUPPORTED_UPGRADE_PATH,
            f"running {current}, which is newer than {target_version}",
        )
        return None
    try:
        check_upgrade_path(current, target_version)
    except UnsupportedUpgradePathError as e:
        skip(SkipReason.UNSUPPORTED_UPGRADE_PATH, str(e))
        return None
    return target_version


def check_controllers_prepared(
    appliances: List[Appliance],
    snapshot: StatsSnapshot,
    upgrade_statuses: Dict[str, UpgradeState],
) -> None:
    """
    Controllers must upgrade together: if one online Controller is prepared,
    all of them must be prepared with the same version.

    Raises:
        NotReadyForCompleteError: Aggregate listing each offending Controller
    """
    prepared: Dict[str, Version] = {}
    unprepared: List[str] = []
    for a in appliances:
        if not a.is_enabled(Function.CONTROLLER):
            continue
        status = snapshot.get(a.id)
        if status is None or not status.is_online:
            continue
        upgrade = upgrade_statuses.get(a.id) or status.upgrade
        if upgrade.status not in (UpgradeStatus.READY, UpgradeStatus.SUCCESS):
            unprepared.append(a.name)
            continue
        try:
            prepared[a.name] = parse_version(upgrade.details)
        except VersionParseError:
            unprepared.append(a.name)

    if not prepared:
        return
    problems = [f"{name} is not prepared for upgrade" for name in sorted(unprepared)]
    versions = {str(v) for v in prepared.values()}
    if len(versions) > 1:
        for name in sorted(prepared):
            problems.append(f"{name} is prepared with {prepared[name]}")
    if problems:
        raise NotReadyForCompleteError(
            "all Controllers must be prepared with the same version:\n"
            + "\n".join(f"  - {p}" for p in problems)
        )


def check_ready_for_complete(
    plan: UpgradePlan, upgrade_statuses: Dict[str, UpgradeState]
) -> None:
    """
    Every planned appliance must still be ready or already successful.

    Raises:
        NotReadyForCompleteError: Listing each appliance that is not
    """
    problems = []
    for p in plan.all_planned():
        us = upgrade_statuses.get(p.appliance.id)
        if us is None or us.status not in (UpgradeStatus.READY, UpgradeStatus.SUCCESS):
            found = us.raw_status if us is not None else "unknown"
            problems.append(f"{p.name} has upgrade status {found!r}")
    if problems:
        raise NotReadyForCompleteError(
            "appliances are not ready for complete:\n"
            + "\n".join(f"  - {p}" for p in problems)
        )


def version_summary(snapshot: StatsSnapshot) -> Dict[str, str]:
    """Map appliance name to version, ignoring appliances reporting unknown."""
    result = {}
    for entry in snapshot.entries:
        if not entry.version or entry.version == UNKNOWN_VERSION:
            continue
        try:
            result[entry.name] = str(parse_version(entry.version))
        except VersionParseError:
            logger.warning(f"Failed to parse version {entry.version!r} of {entry.name}")
            result[entry.name] = entry.version
    return result
