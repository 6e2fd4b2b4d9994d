"""
Fleet upgrade orchestration for an Appgate SDP Collective.
"""

import json
import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Dict, List, Optional, TextIO, Tuple

from sdpctl import availability
from sdpctl.backup import DEFAULT_BACKUP_DESTINATION, BackupRunner
from sdpctl.clients import AdminRestClient
from sdpctl.config import SdpctlConfig
from sdpctl.context import RunContext
from sdpctl.driver import ApplianceDriver
from sdpctl.errors import (
    CanceledByContext,
    MultiError,
    NothingToPrepareError,
    TokenExpiredError,
    UnsupportedUpgradePathError,
    VersionParseError,
)
from sdpctl.files import FileRepository, StagedFile
from sdpctl.filters import ApplianceFilter, order_appliances
from sdpctl.inventory import Inventory, use_primary_peer_version
from sdpctl.log_utils import format_duration, log_banner, log_section
from sdpctl.models import (
    NOT_BUSY_STATUSES,
    READY_STATES,
    Appliance,
    ApplianceStatus,
    Function,
    StatsSnapshot,
    UpgradeResult,
    UpgradeState,
    UpgradeStatus,
)
from sdpctl.plan import (
    COMPLETE,
    PREPARE,
    PlannedAppliance,
    UpgradePlan,
    build_upgrade_plan,
    check_controllers_prepared,
    check_ready_for_complete,
    find_primary_controller,
    version_summary,
)
from sdpctl.progress import NullSink, ProgressSink, TextSink, Tracker
from sdpctl.prompt import confirm
from sdpctl.retry import (
    ENABLE_CONTROLLER_POLICY,
    UPGRADE_STATUS_POLICY,
    Classification,
    retry,
)
from sdpctl.version import (
    Version,
    image_filename,
    parse_version,
    peer_api_version,
    should_disable_controllers,
    target_version_from_image,
)

logger = logging.getLogger(__name__)

DISK_WARNING_PERCENT = 75.0
MAINTENANCE_MIN_PEER_VERSION = 15

NOTHING_TO_COMPLETE = (
    "No appliances are ready to upgrade. Please run 'upgrade prepare' before "
    "trying to complete an upgrade"
)
NOTHING_TO_PREPARE = (
    "No appliances to prepare for upgrade. All appliances may have been filtered "
    "or are already prepared. See the log for more details"
)


def _retry_all(exc: BaseException) -> Classification:
    if isinstance(exc, TokenExpiredError):
        return Classification.TERMINAL
    return Classification.RETRYABLE


class FleetUpgrader:
    """Runs prepare, complete, cancel and status over a Collective."""

    def __init__(
        self,
        api: AdminRestClient,
        config: SdpctlConfig,
        ctx: Optional[RunContext] = None,
        sink: Optional[ProgressSink] = None,
        driver: Optional[ApplianceDriver] = None,
        files: Optional[FileRepository] = None,
        ask: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the fleet upgrader.

        Args:
            api: Admin API client connected to the primary Controller
            config: Run configuration
            ctx: Root cancellation context
            sink: Progress sink, NullSink in CI mode
            driver: Per-appliance driver, built from api when omitted
            files: File repository manager, built from api when omitted
            ask: Confirmation callback raising CanceledByUser on "no"
        """
        self.api = api
        self.config = config
        self.ctx = ctx or RunContext()
        if sink is None:
            sink = NullSink() if config.ci_mode else TextSink()
        self.sink = sink
        self.inventory = Inventory(api, self.ctx)
        self.driver = driver or ApplianceDriver(
            api,
            self.ctx,
            sink,
            status_policy=UPGRADE_STATUS_POLICY.with_max_elapsed(config.timeout),
        )
        self.files = files or FileRepository(api, self.ctx, sink)
        self.ask = ask or (lambda q: confirm(q, config.no_interactive))

        self.stats = {
            "total": 0,
            "planned": 0,
            "skipped": 0,
            "succeeded": 0,
            "failed": 0,
        }
        self.run_start_time: Optional[float] = None
        self.run_end_time: Optional[float] = None
        self.results: List[UpgradeResult] = []
        self._results_lock = threading.Lock()
        self.phase = ""

    # Bookkeeping

    def _record(
        self,
        appliance: Appliance,
        status: str,
        start: Optional[float] = None,
        target: Optional[Version] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        end = time.time() if start is not None else None
        result = UpgradeResult(
            appliance_name=appliance.name,
            site_name=appliance.site_name or appliance.site,
            phase=self.phase,
            status=status,
            start_time=start,
            end_time=end,
            duration_seconds=(end - start) if start is not None else None,
            target_version=str(target) if target is not None else None,
            error_message=str(error) if error is not None else None,
        )
        with self._results_lock:
            self.results.append(result)
            if status == "success":
                self.stats["succeeded"] += 1
            elif status == "failed":
                self.stats["failed"] += 1

    def _record_plan(self, plan: UpgradePlan, total: int) -> None:
        self.stats["total"] = total
        self.stats["planned"] = len(plan.all_planned())
        self.stats["skipped"] = len(plan.skipping)
        for s in plan.skipping:
            self.results.append(
                UpgradeResult(
                    appliance_name=s.appliance.name,
                    site_name=s.appliance.site_name,
                    phase=self.phase,
                    status="skipped",
                    error_message=str(s.reason.value) + (f" ({s.detail})" if s.detail else ""),
                )
            )

    def _appliance_ctx(self, parent: Optional[RunContext] = None) -> RunContext:
        return (parent or self.ctx).with_timeout(self.config.timeout)

    def _negotiate_peer_version(self, primary: Appliance, snapshot: StatsSnapshot) -> None:
        """Derive the peer API version from the primary Controller's stats."""
        status = snapshot.get(primary.id)
        if status is None or not status.version:
            return
        try:
            derived = peer_api_version(parse_version(status.version))
        except VersionParseError as e:
            logger.debug(f"Keeping peer API version {self.api.peer_version}: {e}")
            return
        if derived and derived != self.api.peer_version:
            logger.debug(f"Using peer API version {derived} for {primary.name}")
            self.api.peer_version = derived

    def _load(self) -> Tuple[ApplianceFilter, List[Appliance], Appliance, StatsSnapshot]:
        """List the Collective, find the primary Controller, then snapshot stats."""
        appliance_filter = ApplianceFilter.parse(self.config.include, self.config.exclude)
        appliances, _ = self.inventory.list(order_by=["name"])
        primary = find_primary_controller(appliances, self.config.admin_hostname)
        negotiated = use_primary_peer_version(self.api, primary, self.config.peer_version)
        snapshot, cache_time = self.inventory.stats()
        logger.debug(f"Stats snapshot taken at {cache_time.isoformat()}")
        if not negotiated:
            self._negotiate_peer_version(primary, snapshot)
        return appliance_filter, appliances, primary, snapshot

    def _online_upgrade_statuses(
        self, appliances: List[Appliance], snapshot: StatsSnapshot
    ) -> Dict[str, UpgradeState]:
        online, _, _, fatal = availability.partition(appliances, snapshot)
        err = fatal.error_or_none()
        if err is not None:
            raise err
        return self.inventory.upgrade_status_map(online)

    def _log_summary(self, plan: UpgradePlan, title: str) -> None:
        for line in plan.summary_lines(title):
            logger.info(line)

    def _run_parallel(
        self,
        items: List[PlannedAppliance],
        fn: Callable[[PlannedAppliance], None],
        max_workers: Optional[int] = None,
    ) -> Dict[str, BaseException]:
        """Run fn for every item concurrently; return the errors keyed by appliance id."""
        errors: Dict[str, BaseException] = {}
        if not items:
            return errors
        workers = max(1, min(max_workers or len(items), len(items)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(fn, p): p for p in items}
            for fut in as_completed(futures):
                p = futures[fut]
                try:
                    fut.result()
                except Exception as e:
                    logger.error(f"{p.name}: {e}")
                    errors[p.appliance.id] = e
        return errors

    @staticmethod
    def _aggregate(errors: List[BaseException]) -> Optional[BaseException]:
        """
        Combine errors, dropping cancellations that another error in the
        same group caused.
        """
        root = [e for e in errors if not isinstance(e, CanceledByContext)]
        return MultiError(root or errors).error_or_none()

    # Prepare

    def prepare(
        self,
        image: str,
        host_on_controller: bool = False,
        force: bool = False,
        dev_keyring: bool = False,
        logserver_bundle: Optional[str] = None,
        report: Optional[str] = None,
    ) -> Dict:
        """
        Prepare the planned appliances for an upgrade to the image version.

        Args:
            image: Local path or URL of the .img.zip upgrade image
            host_on_controller: Let the primary Controller fetch a remote image
            force: Prepare appliances that already run or have prepared the
                target, and allow versions older than the primary Controller
            dev_keyring: Accept images signed with the development keyring
            logserver_bundle: Pre-built LogServer bundle, path or URL
            report: Path to export the run report as JSON

        Returns:
            Statistics dictionary

        Raises:
            NothingToPrepareError: If every appliance is skipped
            MultiError: Per-appliance failures
        """
        self.run_start_time = time.time()
        self.phase = PREPARE
        target = target_version_from_image(image)
        image_filename(image)

        log_banner(logger, "Appgate SDP Upgrade Prepare")
        logger.info(f"Image: {image}")
        logger.info(f"Target version: {target}")
        logger.info(f"Throttle: {self.config.throttle}")
        logger.info(f"Timeout per appliance: {format_duration(self.config.timeout)}")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

        self.config.ensure_token_valid(self.config.timeout)
        appliance_filter, appliances, primary, snapshot = self._load()
        self._check_downgrade(primary, snapshot, target, force)
        statuses = self._online_upgrade_statuses(appliances, snapshot)

        plan = build_upgrade_plan(
            appliances,
            snapshot,
            self.config.admin_hostname,
            appliance_filter,
            target_version=target,
            upgrade_statuses=statuses,
            force=force,
            mode=PREPARE,
        )
        self._record_plan(plan, len(appliances))
        if plan.nothing_to_upgrade():
            for s in plan.skipping:
                logger.info(f"Skipping {s}")
            raise NothingToPrepareError(NOTHING_TO_PREPARE)

        self._log_summary(plan, "PREPARE UPGRADE")
        self._warn_low_disk(plan)
        self.ask(f"Prepare {len(plan.all_planned())} appliance(s) for {target}?")

        staged = self.files.ensure_image(image, primary, host_on_controller)
        try:
            if self._needs_logserver_bundle(plan):
                self.files.ensure_logserver_bundle(
                    target,
                    primary,
                    bundle_source=logserver_bundle,
                    registry=self.config.docker_registry,
                )
            self._prepare_pipeline(plan.all_planned(), staged, dev_keyring)
        finally:
            self._cleanup_image(staged)
            self.run_end_time = time.time()
            self._print_report("PREPARE REPORT")
            if report:
                self._export_results_json(report)
        return self.stats

    def _check_downgrade(
        self, primary: Appliance, snapshot: StatsSnapshot, target: Version, force: bool
    ) -> None:
        status = snapshot.get(primary.id)
        if status is None or not status.version:
            return
        try:
            current = parse_version(status.version)
        except VersionParseError:
            return
        if target.compare(current) >= 0:
            return
        message = (
            f"{target} is older than the version of the primary Controller ({current})"
        )
        if not force:
            raise UnsupportedUpgradePathError(
                f"{message}. Use --force to prepare it anyway"
            )
        logger.warning(f"{message}, continuing since --force is set")

    def _warn_low_disk(self, plan: UpgradePlan) -> None:
        low = [p for p in plan.all_planned() if p.status.disk >= DISK_WARNING_PERCENT]
        if not low:
            return
        logger.warning("The following appliances are low on disk space:")
        for p in low:
            logger.warning(f"  {p.name:<25} {p.status.disk:.1f}% used")
        self.ask("Some appliances have less than 25% disk space left. Continue?")

    @staticmethod
    def _needs_logserver_bundle(plan: UpgradePlan) -> bool:
        return any(p.appliance.is_enabled(Function.LOGSERVER) for p in plan.all_planned())

    def _cleanup_image(self, staged: StagedFile) -> None:
        if not staged.on_controller:
            return
        try:
            self.files.delete(staged.name)
        except Exception as e:
            logger.warning(f"Could not delete {staged.name} from the primary Controller: {e}")

    def _prepare_pipeline(
        self, planned: List[PlannedAppliance], staged: StagedFile, dev_keyring: bool
    ) -> None:
        """
        Two-stage prepare.

        Stage 1 starts prepares with at most `throttle` workers and waits for
        each download to finish. Stage 2 then watches every appliance until it
        is ready, without a worker limit. A stage 1 failure cancels the run; stage 2
        failures are collected.
        """
        run_ctx = self.ctx.child()
        workers = max(1, min(self.config.throttle, len(planned)))
        stage1_errors: List[BaseException] = []
        stage2_futures = []
        lock = threading.Lock()

        def watch(p: PlannedAppliance, actx: RunContext, start: float, tracker: Tracker) -> None:
            try:
                self.driver.wait_prepared(p.appliance, tracker, actx)
            except Exception as e:
                self._record(p.appliance, "failed", start, p.target_version, e)
                raise
            finally:
                actx.release()
            self._record(p.appliance, "success", start, p.target_version)

        with ThreadPoolExecutor(max_workers=len(planned)) as waiters:

            def initiate(p: PlannedAppliance) -> None:
                start = time.time()
                actx = self._appliance_ctx(run_ctx)
                tracker = self.sink.tracker(p.name)
                try:
                    self.driver.prepare(p.appliance, staged.url, dev_keyring, tracker, actx)
                except Exception as e:
                    if not isinstance(e, CanceledByContext):
                        run_ctx.cancel(f"prepare failed on {p.name}")
                    actx.release()
                    self._record(p.appliance, "failed", start, p.target_version, e)
                    raise
                with lock:
                    stage2_futures.append((p, waiters.submit(watch, p, actx, start, tracker)))

            with ThreadPoolExecutor(max_workers=workers) as initiators:
                futures = {initiators.submit(initiate, p): p for p in planned}
                for fut in as_completed(futures):
                    try:
                        fut.result()
                    except Exception as e:
                        logger.error(f"Prepare failed on {futures[fut].name}: {e}")
                        stage1_errors.append(e)

            stage2_errors: List[BaseException] = []
            for p, fut in stage2_futures:
                try:
                    fut.result()
                except Exception as e:
                    logger.error(f"{p.name} did not become ready: {e}")
                    stage2_errors.append(e)

        run_ctx.release()
        err = self._aggregate(stage1_errors + stage2_errors)
        if err is not None:
            raise err

    # Complete

    def complete(
        self,
        backup: bool = False,
        backup_destination: str = DEFAULT_BACKUP_DESTINATION,
        report: Optional[str] = None,
    ) -> Dict:
        """
        Install prepared upgrades: primary Controller, additional
        Controllers, the LogServer/LogForwarder phase, then each batch.

        Raises:
            NothingToPrepareError: If nothing is prepared
            NotReadyForCompleteError: If a planned appliance is no longer ready
            MultiError: Failures of a phase; later phases are not started
        """
        self.run_start_time = time.time()
        self.phase = COMPLETE

        log_banner(logger, "Appgate SDP Upgrade Complete")
        logger.info(f"Timeout per appliance: {format_duration(self.config.timeout)}")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

        self.config.ensure_token_valid(self.config.timeout)
        appliance_filter, appliances, primary, snapshot = self._load()
        statuses = self._online_upgrade_statuses(appliances, snapshot)
        check_controllers_prepared(appliances, snapshot, statuses)

        plan = build_upgrade_plan(
            appliances,
            snapshot,
            self.config.admin_hostname,
            appliance_filter,
            upgrade_statuses=statuses,
            mode=COMPLETE,
        )
        self._record_plan(plan, len(appliances))
        if plan.nothing_to_upgrade():
            raise NothingToPrepareError(NOTHING_TO_COMPLETE)

        self._log_summary(plan, "COMPLETE UPGRADE")
        self.ask("Complete the upgrade of the appliances listed above?")

        if backup:
            BackupRunner(self.api, backup_destination, self.ctx).run([primary])

        planned = plan.all_planned()
        fresh = self.inventory.upgrade_status_map([p.appliance for p in planned])
        check_ready_for_complete(plan, fresh)

        try:
            self._complete_phases(plan, primary, snapshot, planned)
        finally:
            self.run_end_time = time.time()
            self._print_report("COMPLETE REPORT")
            if report:
                self._export_results_json(report)

        self.files.cleanup_logserver_bundles()
        self._log_version_summary()
        return self.stats

    def _complete_phases(
        self,
        plan: UpgradePlan,
        primary: Appliance,
        snapshot: StatsSnapshot,
        planned: List[PlannedAppliance],
    ) -> None:
        controllers = plan.additional_controllers
        disable = bool(controllers) and should_disable_controllers(
            controllers[0].current_version, controllers[0].target_version
        )
        if disable:
            for p in controllers:
                logger.info(f"Disabling the Controller function on {p.name}")
                self.api.set_controller_enabled(p.appliance, False, self.ctx)

        if plan.primary_controller is not None:
            self._complete_primary(plan.primary_controller, snapshot)

        if controllers:
            self._complete_controllers(controllers, snapshot, disable)

        if plan.logforwarders_and_servers:
            self._complete_log_phase(plan.logforwarders_and_servers, snapshot)

        for i, batch in enumerate(plan.batches, start=1):
            logger.info(f"Completing batch {i} of {len(plan.batches)}")
            try:
                self._complete_batch(batch, snapshot)
            except Exception:
                for later in plan.batches[i:]:
                    for p in later:
                        self._record(p.appliance, "skipped", error=Exception(f"batch {i} failed"))
                raise

    def _complete_primary(self, p: PlannedAppliance, snapshot: StatsSnapshot) -> None:
        start = time.time()
        a = p.appliance
        actx = self._appliance_ctx()
        tracker = self.sink.tracker(a.name)
        try:
            self.driver.wait_for_appliance_state(a, READY_STATES, tracker, ctx=actx)
            self.driver.complete(a, True, tracker, actx)
            self.driver.wait_for_upgrade_status(
                a, {UpgradeStatus.IDLE}, {UpgradeStatus.FAILED}, tracker, "switching partition", actx
            )
            self.driver.wait_for_appliance_state(a, READY_STATES, tracker, "initializing", actx)
            self.driver.check_volume_switched(a, snapshot.get(a.id), actx)
        except Exception as e:
            self.ctx.cancel(f"upgrade of the primary Controller {a.name} failed")
            tracker.fail(str(e))
            self._record(a, "failed", start, p.target_version, e)
            raise
        finally:
            actx.release()
        tracker.complete(f"upgraded to {p.target_version}")
        self._record(a, "success", start, p.target_version)

    def _complete_controllers(
        self, controllers: List[PlannedAppliance], snapshot: StatsSnapshot, disabled: bool
    ) -> None:
        maintenance = self.api.peer_version >= MAINTENANCE_MIN_PEER_VERSION

        def upgrade(p: PlannedAppliance) -> None:
            start = time.time()
            a = p.appliance
            actx = self._appliance_ctx()
            tracker = self.sink.tracker(a.name)
            try:
                if maintenance:
                    self.driver.set_maintenance(a, True, tracker, actx)
                self.driver.complete(a, True, tracker, actx, retried=True)
                self.driver.wait_for_upgrade_status(
                    a, {UpgradeStatus.IDLE}, {UpgradeStatus.FAILED}, tracker, "switching partition", actx
                )
                if disabled:
                    tracker.update("enabling controller function")
                    retry(
                        ENABLE_CONTROLLER_POLICY,
                        lambda: self.api.set_controller_enabled(a, True, actx),
                        _retry_all,
                        actx,
                    )
                self.driver.wait_for_appliance_state(a, READY_STATES, tracker, "initializing", actx)
                if maintenance:
                    self.driver.set_maintenance(a, False, tracker, actx)
                    self.driver.wait_for_appliance_status(a, NOT_BUSY_STATUSES, tracker, actx)
                self.driver.check_volume_switched(a, snapshot.get(a.id), actx)
            except Exception as e:
                tracker.fail(str(e))
                self._record(a, "failed", start, p.target_version, e)
                raise
            finally:
                actx.release()
            tracker.complete(f"upgraded to {p.target_version}")
            self._record(a, "success", start, p.target_version)

        errors = self._run_parallel(controllers, upgrade)
        if errors:
            self.ctx.cancel("upgrade of an additional Controller failed")
            raise self._aggregate(list(errors.values()))

    def _complete_log_phase(self, items: List[PlannedAppliance], snapshot: StatsSnapshot) -> None:
        def upgrade(p: PlannedAppliance) -> None:
            start = time.time()
            a = p.appliance
            actx = self._appliance_ctx()
            tracker = self.sink.tracker(a.name)
            try:
                self.driver.complete(a, True, tracker, actx, retried=True)
                self.driver.wait_for_upgrade_status(
                    a, {UpgradeStatus.IDLE}, {UpgradeStatus.FAILED}, tracker, "switching partition", actx
                )
                self.driver.wait_for_appliance_state(a, READY_STATES, tracker, "initializing", actx)
                self.driver.check_volume_switched(a, snapshot.get(a.id), actx)
            except Exception as e:
                tracker.fail(str(e))
                self._record(a, "failed", start, p.target_version, e)
                raise
            finally:
                actx.release()
            tracker.complete(f"upgraded to {p.target_version}")
            self._record(a, "success", start, p.target_version)

        errors = self._run_parallel(items, upgrade)
        if errors:
            raise self._aggregate(list(errors.values()))

    def _complete_batch(self, batch: List[PlannedAppliance], snapshot: StatsSnapshot) -> None:
        """
        complete(switch=false) on every member, then switch_partition on
        every member, then wait for all of them to come back.
        """
        contexts = {p.appliance.id: self._appliance_ctx() for p in batch}
        starts = {p.appliance.id: time.time() for p in batch}
        trackers = {p.appliance.id: self.sink.tracker(p.name) for p in batch}
        failed: Dict[str, BaseException] = {}

        def fail(p: PlannedAppliance, e: BaseException) -> None:
            trackers[p.appliance.id].fail(str(e))
            self._record(p.appliance, "failed", starts[p.appliance.id], p.target_version, e)
            failed[p.appliance.id] = e

        def install(p: PlannedAppliance) -> None:
            actx = contexts[p.appliance.id]
            tracker = trackers[p.appliance.id]
            self.driver.complete(p.appliance, False, tracker, actx, retried=True)
            self.driver.wait_for_upgrade_status(
                p.appliance, {UpgradeStatus.SUCCESS}, {UpgradeStatus.FAILED}, tracker, ctx=actx
            )

        def switch(p: PlannedAppliance) -> None:
            actx = contexts[p.appliance.id]
            tracker = trackers[p.appliance.id]
            self.driver.switch_partition(p.appliance, tracker, actx)
            self.driver.wait_for_upgrade_status(
                p.appliance, {UpgradeStatus.IDLE}, {UpgradeStatus.FAILED}, tracker, "switching partition", actx
            )
            self.driver.wait_for_appliance_state(p.appliance, READY_STATES, tracker, "initializing", actx)
            self.driver.check_volume_switched(p.appliance, snapshot.get(p.appliance.id), actx)

        try:
            for step in (install, switch):
                remaining = [p for p in batch if p.appliance.id not in failed]
                errors = self._run_parallel(remaining, step)
                for p in remaining:
                    if p.appliance.id in errors:
                        fail(p, errors[p.appliance.id])
        finally:
            for actx in contexts.values():
                actx.release()

        for p in batch:
            if p.appliance.id not in failed:
                trackers[p.appliance.id].complete(f"upgraded to {p.target_version}")
                self._record(p.appliance, "success", starts[p.appliance.id], p.target_version)

        if failed:
            raise self._aggregate(list(failed.values()))

    def _log_version_summary(self) -> None:
        try:
            snapshot, _ = self.inventory.stats()
        except Exception as e:
            logger.warning(f"Could not read appliance versions after upgrade: {e}")
            return
        versions = version_summary(snapshot)
        log_banner(logger, "UPGRADE COMPLETE")
        logger.info(f"{'Appliance':<25} {'Current version'}")
        logger.info("-" * 70)
        for name in sorted(versions):
            logger.info(f"{name:<25} {versions[name]}")
        if len(set(versions.values())) > 1:
            logger.warning("WARNING: Upgrade was completed, but not all appliances are running the same version.")
        logger.info("=" * 70)

    # Cancel

    def cancel(self, delete: bool = False) -> Dict:
        """
        Cancel prepared or ongoing upgrades. Appliances that are already
        idle are left alone, so canceling twice is a no-op.
        """
        self.run_start_time = time.time()
        self.phase = "cancel"
        appliance_filter, appliances, primary, snapshot = self._load()
        statuses = {e.id: e for e in snapshot.entries}
        included, _ = appliance_filter.apply(appliances, statuses)
        online, offline, _, _ = availability.partition(included, snapshot)
        for a in offline:
            logger.warning(f"Skipping {a.name}: appliance is offline")

        upgrade_statuses = self.inventory.upgrade_status_map(online)
        pending = [a for a in online if upgrade_statuses[a.id].status is not UpgradeStatus.IDLE]
        self.stats["total"] = len(appliances)
        self.stats["planned"] = len(pending)

        if not pending:
            logger.info("No appliances have a prepared or ongoing upgrade to cancel")
        else:
            logger.info("Upgrades will be canceled on:")
            for a in pending:
                logger.info(f"  - {a.name} ({upgrade_statuses[a.id].raw_status})")
            self.ask(f"Cancel the upgrade on {len(pending)} appliance(s)?")
            self._cancel_all(pending)

        if delete:
            self._delete_images()
        self.run_end_time = time.time()
        return self.stats

    def _cancel_all(self, appliances: List[Appliance]) -> None:
        def cancel_one(a: Appliance) -> None:
            start = time.time()
            try:
                with self._appliance_ctx() as actx:
                    self.driver.cancel(a, ctx=actx)
            except Exception as e:
                self._record(a, "failed", start, error=e)
                raise
            self.sink.tracker(a.name).complete("canceled")
            self._record(a, "success", start)

        errors: List[BaseException] = []
        workers = max(1, min(self.config.throttle, len(appliances)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(cancel_one, a): a for a in appliances}
            for fut in as_completed(futures):
                try:
                    fut.result()
                except Exception as e:
                    logger.error(f"Cancel failed on {futures[fut].name}: {e}")
                    errors.append(e)
        err = self._aggregate(errors)
        if err is not None:
            raise err

    def _delete_images(self) -> None:
        for f in self.files.list():
            if f.name.endswith(".img.zip"):
                self.files.delete(f.name)

    # Status

    def status(self, as_json: bool = False, out: Optional[TextIO] = None) -> List[Dict]:
        """Print name, site, version and upgrade status of the filtered appliances."""
        out = out or sys.stdout
        appliance_filter, appliances, primary, snapshot = self._load()
        statuses = {e.id: e for e in snapshot.entries}
        included, _ = appliance_filter.apply(appliances, statuses)
        included = order_appliances(included, self.config.order_by, self.config.descending)
        online, _, _, _ = availability.partition(included, snapshot)
        upgrade_statuses = self.inventory.upgrade_status_map(online)

        rows = []
        for a in included:
            stat: Optional[ApplianceStatus] = statuses.get(a.id)
            us = upgrade_statuses.get(a.id)
            rows.append(
                {
                    "id": a.id,
                    "name": a.name,
                    "site": a.site_name or a.site,
                    "version": stat.version if stat else "unknown",
                    "online": bool(stat and stat.is_online),
                    "upgradeStatus": us.raw_status if us else "offline",
                    "details": us.details if us else "",
                }
            )

        if as_json:
            json.dump(rows, out, indent=2)
            out.write("\n")
            return rows
        out.write(f"{'Appliance':<25} {'Site':<20} {'Version':<22} {'Status':<12} {'Details'}\n")
        out.write("-" * 90 + "\n")
        for r in rows:
            out.write(
                f"{r['name']:<25} {r['site']:<20} {r['version']:<22} {r['upgradeStatus']:<12} {r['details']}\n"
            )
        return rows

    # Report

    def _print_report(self, title: str) -> None:
        """Print detailed timing and status report."""
        end = self.run_end_time or time.time()
        total_duration = end - (self.run_start_time or end)

        logger.info("")
        log_banner(logger, title)

        log_section(logger, "TIMING SUMMARY")
        if self.run_start_time:
            logger.info(
                f"Start time:      {datetime.fromtimestamp(self.run_start_time).strftime('%Y-%m-%d %H:%M:%S')}"
            )
        logger.info(f"End time:        {datetime.fromtimestamp(end).strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info(f"Total duration:  {format_duration(total_duration)}")

        log_section(logger, "STATISTICS")
        for k, v in self.stats.items():
            logger.info(f"{k:20s}: {v}")

        successful = [r for r in self.results if r.status == "success"]
        failed = [r for r in self.results if r.status == "failed"]
        skipped = [r for r in self.results if r.status == "skipped"]

        if successful:
            log_section(logger, "SUCCESSFUL APPLIANCES")
            logger.info(f"{'Appliance':<25} {'Site':<20} {'Duration':<12} {'Version'}")
            logger.info("-" * 70)
            for r in successful:
                duration = format_duration(r.duration_seconds) if r.duration_seconds else "N/A"
                logger.info(
                    f"{r.appliance_name:<25} {r.site_name:<20} {duration:<12} {r.target_version or 'N/A'}"
                )
            times = [r.duration_seconds for r in successful if r.duration_seconds]
            if len(times) > 1:
                logger.info("-" * 70)
                logger.info(f"Average time:    {format_duration(sum(times) / len(times))}")
                logger.info(f"Slowest:         {format_duration(max(times))}")

        if failed:
            log_section(logger, "FAILED APPLIANCES")
            logger.info(f"{'Appliance':<25} {'Site':<20} {'Error'}")
            logger.info("-" * 70)
            for r in failed:
                error = r.error_message or "Unknown"
                if len(error) > 60:
                    error = error[:60] + "..."
                logger.info(f"{r.appliance_name:<25} {r.site_name:<20} {error}")

        if skipped:
            log_section(logger, "SKIPPED APPLIANCES")
            logger.info(f"{'Appliance':<25} {'Site':<20} {'Reason'}")
            logger.info("-" * 70)
            for r in skipped:
                logger.info(f"{r.appliance_name:<25} {r.site_name:<20} {r.error_message or 'Unknown'}")

        logger.info("")
        logger.info("=" * 70)

    def _export_results_json(self, path: str) -> None:
        """Export results to JSON file for further processing."""
        def ts(value: Optional[float]) -> Optional[str]:
            return datetime.fromtimestamp(value).isoformat() if value else None

        report = {
            "url": self.config.url,
            "phase": self.phase,
            "start_time": ts(self.run_start_time),
            "end_time": ts(self.run_end_time),
            "total_duration_seconds": (
                self.run_end_time - self.run_start_time
                if self.run_start_time and self.run_end_time
                else None
            ),
            "statistics": self.stats,
            "results": [
                {
                    "appliance_name": r.appliance_name,
                    "site": r.site_name,
                    "phase": r.phase,
                    "status": r.status,
                    "start_time": ts(r.start_time),
                    "end_time": ts(r.end_time),
                    "duration_seconds": r.duration_seconds,
                    "target_version": r.target_version,
                    "error_message": r.error_message,
                }
                for r in self.results
            ],
        }
        with open(path, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Detailed report exported to: {path}")
