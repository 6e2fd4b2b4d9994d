"""
Remove dead Controllers from a Collective.

The Controllers that stay are told which Controllers are gone, then each of
them re-partitions its VPN IP allocations.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Set

from sdpctl.clients import AdminRestClient
from sdpctl.config import SdpctlConfig
from sdpctl.context import RunContext
from sdpctl.driver import ApplianceDriver
from sdpctl.errors import (
    CanceledByContext,
    ConfigError,
    IllegalOperationError,
    MultiError,
)
from sdpctl.inventory import use_primary_peer_version
from sdpctl.log_utils import log_banner, log_section
from sdpctl.models import Appliance, Function, StatsSnapshot
from sdpctl.plan import find_primary_controller
from sdpctl.progress import NullSink, ProgressSink, TextSink
from sdpctl.prompt import confirm

logger = logging.getLogger(__name__)

FORCE_DISABLE_MIN_PEER_VERSION = 18
ANNOUNCE_STAGGER = 2.0


class _Stagger:
    """Spaces out the first request of concurrent workers."""

    def __init__(self, interval: float, ctx: RunContext):
        self.interval = interval
        self.ctx = ctx
        self._lock = threading.Lock()
        self._next = 0.0

    def wait(self) -> None:
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next)
            self._next = slot + self.interval
        delay = slot - time.monotonic()
        if delay > 0:
            self.ctx.sleep(delay)


def resolve_controllers(
    appliances: List[Appliance], hostnames: List[str]
) -> List[Appliance]:
    """
    Map hostnames onto enabled Controllers.

    Raises:
        ConfigError: If a hostname matches no enabled Controller
    """
    resolved: List[Appliance] = []
    unknown: List[str] = []
    for host in hostnames:
        wanted = host.lower()
        match = None
        for a in appliances:
            if not a.is_enabled(Function.CONTROLLER):
                continue
            names = {h.lower() for h in (a.hostname, a.peer_hostname, a.admin_hostname) if h}
            if wanted in names:
                match = a
                break
        if match is None:
            unknown.append(host)
        elif match not in resolved:
            resolved.append(match)
    if unknown:
        raise ConfigError(
            "no enabled Controller with hostname: " + ", ".join(unknown)
        )
    return resolved


class ForceDisableCoordinator:
    """Announces disabled Controllers and re-allocates IP pools."""

    def __init__(
        self,
        api: AdminRestClient,
        config: SdpctlConfig,
        ctx: Optional[RunContext] = None,
        sink: Optional[ProgressSink] = None,
        driver: Optional[ApplianceDriver] = None,
        ask: Optional[Callable[[str], None]] = None,
        stagger: float = ANNOUNCE_STAGGER,
    ):
        self.api = api
        self.config = config
        self.ctx = ctx or RunContext()
        if sink is None:
            sink = NullSink() if config.ci_mode else TextSink()
        self.sink = sink
        self.driver = driver or ApplianceDriver(api, self.ctx, sink)
        self.ask = ask or (lambda q: confirm(q, config.no_interactive))
        self.stagger = stagger

    def run(self, hostnames: List[str]) -> Dict[str, List[str]]:
        """
        Force-disable the Controllers with the given hostnames.

        Args:
            hostnames: Hostnames of the Controllers to disable

        Returns:
            Dictionary with the disabled, announced and offline Controller names

        Raises:
            ConfigError: If the peer API is too old or a hostname is unknown
            IllegalOperationError: If the primary Controller is in the list
            MultiError: Announce or change failures
        """
        if not hostnames:
            raise ConfigError("no Controller hostnames given")

        appliances = self.api.list_appliances(self.ctx)
        primary = find_primary_controller(appliances, self.config.admin_hostname)
        use_primary_peer_version(self.api, primary, self.config.peer_version)
        if self.api.peer_version < FORCE_DISABLE_MIN_PEER_VERSION:
            raise ConfigError(
                f"force-disable-controller needs admin API version {FORCE_DISABLE_MIN_PEER_VERSION} "
                f"or later, the Collective uses {self.api.peer_version}"
            )

        disable = resolve_controllers(appliances, hostnames)
        if any(a.id == primary.id for a in disable):
            raise IllegalOperationError(
                "Illegal operation. Disabling the primary Controller is not allowed"
            )

        disable_ids = {a.id for a in disable}
        announce = [
            a
            for a in appliances
            if a.is_enabled(Function.CONTROLLER) and a.id not in disable_ids
        ]
        if not announce:
            raise ConfigError("no controllers to announce to")

        snapshot = self.api.stats(self.ctx)
        self._print_summary(disable, announce, snapshot)
        self.ask(f"Force-disable {len(disable)} Controller(s)?")

        run_ctx = self.ctx.child()
        changes, offline_ids, errors = self._announce(announce, disable, run_ctx)

        by_id = {a.id: a for a in appliances}
        offline = [by_id[i] for i in sorted(offline_ids) if i in by_id]
        if offline:
            self._print_offline(offline, snapshot)
            self.ask("Are the Controllers listed above offline?")

        errors.extend(self._apply(announce, changes, run_ctx))
        run_ctx.release()
        err = MultiError(
            [e for e in errors if not isinstance(e, CanceledByContext)] or errors
        ).error_or_none()
        if err is not None:
            raise err

        log_banner(logger, "FORCE-DISABLE-CONTROLLER COMPLETE")
        for a in disable:
            logger.info(f"  {a.name} was disabled")
        logger.warning(
            "Running force-disable-controller again for these Controllers will announce them again"
        )
        return {
            "disabled": [a.name for a in disable],
            "announced": [a.name for a in announce if a.id in changes],
            "offline": [a.name for a in offline],
        }

    def _announce(
        self, announce: List[Appliance], disable: List[Appliance], ctx: RunContext
    ):
        stagger = _Stagger(self.stagger, ctx)
        disable_ids = [a.id for a in disable]
        changes: Dict[str, Optional[str]] = {}
        offline: Set[str] = set()
        errors: List[BaseException] = []

        def announce_one(a: Appliance):
            stagger.wait()
            tracker = self.sink.tracker(a.name)
            tracker.update("announcing disabled Controllers")
            try:
                return self.api.force_disable_controllers(a.real_hostname, disable_ids, ctx)
            except Exception as e:
                tracker.fail(str(e))
                raise

        with ThreadPoolExecutor(max_workers=len(announce)) as pool:
            futures = {pool.submit(announce_one, a): a for a in announce}
            for fut in as_completed(futures):
                a = futures[fut]
                try:
                    offline_ids, change_id = fut.result()
                except Exception as e:
                    logger.error(f"Announcing to {a.name} failed: {e}")
                    ctx.cancel(f"announcing to {a.name} failed")
                    errors.append(e)
                    continue
                changes[a.id] = change_id
                offline.update(offline_ids)
        return changes, offline, errors

    def _apply(
        self,
        announce: List[Appliance],
        changes: Dict[str, Optional[str]],
        ctx: RunContext,
    ) -> List[BaseException]:
        targets = [a for a in announce if a.id in changes]
        errors: List[BaseException] = []
        if not targets:
            return errors

        def apply_one(a: Appliance) -> None:
            tracker = self.sink.tracker(a.name)
            if changes[a.id]:
                self.driver.wait_for_change(a, changes[a.id], tracker, ctx)
            tracker.update("re-allocating IP pools")
            change_id = self.api.repartition_ip_allocations(a.id, ctx)
            if change_id:
                self.driver.wait_for_change(a, change_id, tracker, ctx)
            tracker.complete()

        with ThreadPoolExecutor(max_workers=len(targets)) as pool:
            futures = {pool.submit(apply_one, a): a for a in targets}
            for fut in as_completed(futures):
                a = futures[fut]
                try:
                    fut.result()
                except Exception as e:
                    logger.error(f"Applying the change on {a.name} failed: {e}")
                    ctx.cancel(f"change on {a.name} failed")
                    errors.append(e)
        return errors

    @staticmethod
    def _table(appliances: List[Appliance], snapshot: StatsSnapshot) -> None:
        logger.info(f"{'Name':<25} {'Hostname':<30} {'Status':<12} {'Version'}")
        logger.info("-" * 80)
        for a in appliances:
            stat = snapshot.get(a.id)
            status = stat.status.value if stat else "unknown"
            version = (stat.version if stat else "") or "unknown"
            logger.info(f"{a.name:<25} {a.real_hostname:<30} {status:<12} {version}")

    def _print_summary(
        self, disable: List[Appliance], announce: List[Appliance], snapshot: StatsSnapshot
    ) -> None:
        log_banner(logger, "FORCE-DISABLE-CONTROLLER SUMMARY")
        log_section(logger, "CONTROLLERS TO DISABLE")
        self._table(disable, snapshot)
        log_section(logger, "CONTROLLERS TO ANNOUNCE TO")
        self._table(announce, snapshot)
        logger.info("=" * 70)

    def _print_offline(self, offline: List[Appliance], snapshot: StatsSnapshot) -> None:
        log_section(logger, "WARNING: UNREACHABLE CONTROLLERS")
        self._table(offline, snapshot)
