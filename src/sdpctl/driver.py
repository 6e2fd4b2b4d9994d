"""
Per-appliance upgrade driver.

Drives one appliance through idle -> ready -> success -> idle by calling the
admin API and polling the upgrade sub-status, the appliance state and change
tickets until they settle.
"""

import logging
from typing import Callable, Iterable, Optional, Set

from sdpctl.clients import AdminRestClient
from sdpctl.context import RunContext
from sdpctl.errors import (
    APIError,
    CanceledByContext,
    ChangeFailedError,
    TokenExpiredError,
    TransportError,
    UpgradeFailedError,
    WaitTimeoutError,
)
from sdpctl.models import (
    NOT_BUSY_STATUSES,
    Appliance,
    ApplianceState,
    ApplianceStatus,
    ChangeTicket,
    HealthStatus,
    UpgradeState,
    UpgradeStatus,
)
from sdpctl.progress import NullSink, ProgressSink, Tracker
from sdpctl.retry import (
    APPLIANCE_STATE_POLICY,
    CHANGE_POLICY,
    COMPLETE_CALL_POLICY,
    UPGRADE_STATUS_POLICY,
    Classification,
    RetryPolicy,
    retry,
)

logger = logging.getLogger(__name__)

OFFLINE_MESSAGE = "no response, appliance offline"
POLL_REQUEST_TIMEOUT = 5.0
# Client errors that may clear up on their own.
TRANSIENT_CLIENT_STATUSES = (408, 429)


class _StillWaiting(Exception):
    """The polled value is not the wanted one yet."""


def _classify_wait(exc: BaseException) -> Classification:
    if isinstance(exc, TokenExpiredError):
        return Classification.TERMINAL
    if isinstance(exc, (UpgradeFailedError, ChangeFailedError)):
        return Classification.PERMANENT
    if (
        isinstance(exc, APIError)
        and 400 <= exc.status < 500
        and exc.status not in TRANSIENT_CLIENT_STATUSES
    ):
        return Classification.PERMANENT
    # The appliance may be rebooting; transport errors and 5xx are retried until the deadline.
    return Classification.RETRYABLE


def _classify_call(exc: BaseException) -> Classification:
    if isinstance(exc, TransportError):
        return Classification.RETRYABLE
    if isinstance(exc, APIError) and exc.status >= 500:
        return Classification.RETRYABLE
    return Classification.PERMANENT


def _names(values: Iterable) -> str:
    return ", ".join(sorted(v.value for v in values))


class ApplianceDriver:
    """State machine operations for a single appliance."""

    def __init__(
        self,
        api: AdminRestClient,
        ctx: Optional[RunContext] = None,
        sink: Optional[ProgressSink] = None,
        status_policy: RetryPolicy = UPGRADE_STATUS_POLICY,
        state_policy: RetryPolicy = APPLIANCE_STATE_POLICY,
        change_policy: RetryPolicy = CHANGE_POLICY,
        call_policy: RetryPolicy = COMPLETE_CALL_POLICY,
    ):
        self.api = api
        self.ctx = ctx or RunContext()
        self.sink = sink or NullSink()
        self.status_policy = status_policy
        self.state_policy = state_policy
        self.change_policy = change_policy
        self.call_policy = call_policy

    def tracker(self, appliance: Appliance) -> Tracker:
        return self.sink.tracker(appliance.name)

    def _wait(
        self,
        policy: RetryPolicy,
        op: Callable,
        tracker: Tracker,
        ctx: RunContext,
        what: str,
    ):
        try:
            return retry(policy, op, _classify_wait, ctx)
        except CanceledByContext as e:
            tracker.fail(str(e))
            raise
        except (_StillWaiting, TransportError, APIError) as e:
            if _classify_wait(e) is Classification.PERMANENT:
                tracker.fail(str(e))
                raise
            tracker.fail(f"timed out waiting for {what}")
            raise WaitTimeoutError(f"timed out waiting for {what}: {e}") from e
        except Exception as e:
            tracker.fail(str(e))
            raise

    def wait_for_upgrade_status(
        self,
        appliance: Appliance,
        wanted: Set[UpgradeStatus],
        unwanted: Set[UpgradeStatus],
        tracker: Optional[Tracker] = None,
        offline_message: str = OFFLINE_MESSAGE,
        ctx: Optional[RunContext] = None,
    ) -> UpgradeState:
        """
        Poll the upgrade sub-status until it is in wanted.

        Transport errors keep the wait going since the appliance may be
        rebooting. A status in unwanted ends the wait with an error.

        Raises:
            UpgradeFailedError: On a status in unwanted
            WaitTimeoutError: If the deadline passes first
            CanceledByContext: If the run is canceled
        """
        tracker = tracker or self.tracker(appliance)
        ctx = ctx or self.ctx

        def op() -> UpgradeState:
            try:
                state = self.api.upgrade_status(
                    appliance.id, ctx, timeout=POLL_REQUEST_TIMEOUT
                )
            except TransportError:
                tracker.update(offline_message)
                raise
            tracker.update(state.raw_status or state.status.value)
            if state.status in unwanted:
                detail = f"command failed on {appliance.name}: status {state.raw_status}"
                if state.details:
                    detail += f" details {state.details}"
                raise UpgradeFailedError(appliance.name, detail)
            if state.status in wanted:
                return state
            raise _StillWaiting(f"{appliance.name} upgrade status is {state.raw_status}")

        return self._wait(
            self.status_policy, op, tracker, ctx, f"{appliance.name} to reach {_names(wanted)}"
        )

    def _poll_stats(
        self,
        appliance: Appliance,
        accept: Callable[[ApplianceStatus], bool],
        tracker: Tracker,
        ctx: RunContext,
        what: str,
        offline_message: str,
    ) -> ApplianceStatus:
        def op() -> ApplianceStatus:
            try:
                snapshot = self.api.stats(ctx)
            except TransportError:
                tracker.update(offline_message)
                raise
            entry = snapshot.get(appliance.id)
            if entry is None:
                raise _StillWaiting(f"no stats for {appliance.name}")
            tracker.update(entry.raw_state or entry.status.value)
            if accept(entry):
                return entry
            raise _StillWaiting(
                f"{appliance.name} is {entry.raw_state or 'unknown'} ({entry.status.value})"
            )

        return self._wait(self.state_policy, op, tracker, ctx, what)

    def wait_for_appliance_state(
        self,
        appliance: Appliance,
        wanted: Set[ApplianceState],
        tracker: Optional[Tracker] = None,
        offline_message: str = OFFLINE_MESSAGE,
        ctx: Optional[RunContext] = None,
    ) -> ApplianceStatus:
        """Poll stats until the appliance reports one of the wanted states."""
        return self._poll_stats(
            appliance,
            lambda e: e.state in wanted,
            tracker or self.tracker(appliance),
            ctx or self.ctx,
            f"{appliance.name} to reach state {_names(wanted)}",
            offline_message,
        )

    def wait_for_appliance_status(
        self,
        appliance: Appliance,
        wanted: Set[HealthStatus] = NOT_BUSY_STATUSES,
        tracker: Optional[Tracker] = None,
        ctx: Optional[RunContext] = None,
    ) -> ApplianceStatus:
        """Poll stats until the appliance health status is in wanted."""
        return self._poll_stats(
            appliance,
            lambda e: e.status in wanted,
            tracker or self.tracker(appliance),
            ctx or self.ctx,
            f"{appliance.name} to reach status {_names(wanted)}",
            OFFLINE_MESSAGE,
        )

    def wait_for_change(
        self,
        appliance: Appliance,
        change_id: str,
        tracker: Optional[Tracker] = None,
        ctx: Optional[RunContext] = None,
    ) -> ChangeTicket:
        """
        Poll a change ticket to its terminal state.

        Raises:
            ChangeFailedError: If the change completed without success
        """
        tracker = tracker or self.tracker(appliance)
        ctx = ctx or self.ctx

        def op() -> ChangeTicket:
            ticket = self.api.get_change(appliance.id, change_id, ctx)
            if ticket.running:
                raise _StillWaiting(f"change {change_id} is {ticket.status}")
            if not ticket.succeeded:
                raise ChangeFailedError(
                    f"change {change_id} on {appliance.name} {ticket.result or 'failed'}: {ticket.details}"
                )
            return ticket

        return self._wait(
            self.change_policy, op, tracker, ctx, f"change {change_id} on {appliance.name}"
        )

    def _call(self, op: Callable, ctx: RunContext, retried: bool):
        if not retried:
            return op()
        return retry(self.call_policy, op, _classify_call, ctx)

    def cancel(
        self,
        appliance: Appliance,
        tracker: Optional[Tracker] = None,
        ctx: Optional[RunContext] = None,
    ) -> UpgradeState:
        """Cancel a prepared or ongoing upgrade and wait for idle."""
        tracker = tracker or self.tracker(appliance)
        ctx = ctx or self.ctx
        tracker.update("canceling")
        self.api.cancel_upgrade(appliance.id, ctx)
        return self.wait_for_upgrade_status(
            appliance, {UpgradeStatus.IDLE}, set(), tracker, ctx=ctx
        )

    def prepare(
        self,
        appliance: Appliance,
        image_url: str,
        dev_keyring: bool = False,
        tracker: Optional[Tracker] = None,
        ctx: Optional[RunContext] = None,
    ) -> UpgradeState:
        """
        Start a prepare and wait until the download is done.

        A prepare that is already in flight is canceled first. Returns once
        the appliance is verifying or ready; the rest of the wait is
        wait_prepared.
        """
        tracker = tracker or self.tracker(appliance)
        ctx = ctx or self.ctx

        self.wait_for_appliance_status(appliance, NOT_BUSY_STATUSES, tracker, ctx)
        current = self.api.upgrade_status(appliance.id, ctx)
        if current.status is not UpgradeStatus.IDLE:
            logger.info(
                f"{appliance.name} upgrade status is {current.raw_status}, canceling it before prepare"
            )
            self.cancel(appliance, tracker, ctx)

        tracker.update("preparing")
        change_id = self.api.prepare_upgrade(appliance.id, image_url, dev_keyring, ctx)
        if change_id:
            self.wait_for_change(appliance, change_id, tracker, ctx)
        return self.wait_for_upgrade_status(
            appliance,
            {UpgradeStatus.VERIFYING, UpgradeStatus.READY},
            {UpgradeStatus.FAILED, UpgradeStatus.IDLE},
            tracker,
            ctx=ctx,
        )

    def wait_prepared(
        self,
        appliance: Appliance,
        tracker: Optional[Tracker] = None,
        ctx: Optional[RunContext] = None,
    ) -> UpgradeState:
        tracker = tracker or self.tracker(appliance)
        state = self.wait_for_upgrade_status(
            appliance,
            {UpgradeStatus.READY, UpgradeStatus.SUCCESS},
            {UpgradeStatus.FAILED, UpgradeStatus.IDLE},
            tracker,
            ctx=ctx,
        )
        tracker.complete(f"prepared {state.details}".strip())
        return state

    def complete(
        self,
        appliance: Appliance,
        switch_partition: bool,
        tracker: Optional[Tracker] = None,
        ctx: Optional[RunContext] = None,
        retried: bool = False,
    ) -> None:
        """Install the prepared image, switching partition if asked to."""
        tracker = tracker or self.tracker(appliance)
        ctx = ctx or self.ctx
        tracker.update("installing" if switch_partition else "installing, no switch")
        change_id = self._call(
            lambda: self.api.complete_upgrade(appliance.id, switch_partition, ctx),
            ctx,
            retried,
        )
        if change_id:
            self.wait_for_change(appliance, change_id, tracker, ctx)

    def switch_partition(
        self,
        appliance: Appliance,
        tracker: Optional[Tracker] = None,
        ctx: Optional[RunContext] = None,
    ) -> None:
        tracker = tracker or self.tracker(appliance)
        ctx = ctx or self.ctx
        tracker.update("switching partition")
        change_id = self.api.switch_partition(appliance.id, ctx)
        if change_id:
            self.wait_for_change(appliance, change_id, tracker, ctx)

    def set_maintenance(
        self,
        appliance: Appliance,
        enabled: bool,
        tracker: Optional[Tracker] = None,
        ctx: Optional[RunContext] = None,
    ) -> None:
        tracker = tracker or self.tracker(appliance)
        ctx = ctx or self.ctx
        tracker.update("enabling maintenance mode" if enabled else "disabling maintenance mode")
        change_id = self.api.set_maintenance(appliance.id, enabled, ctx)
        if change_id:
            self.wait_for_change(appliance, change_id, tracker, ctx)

    def check_volume_switched(
        self,
        appliance: Appliance,
        before: Optional[ApplianceStatus],
        ctx: Optional[RunContext] = None,
    ) -> None:
        """
        Raises:
            UpgradeFailedError: If the active partition is the same as before
        """
        if before is None or before.volume_number is None:
            return
        after = self.api.stats(ctx or self.ctx).get(appliance.id)
        if after is None or after.volume_number is None:
            logger.warning(f"Could not verify the active partition of {appliance.name}")
            return
        if after.volume_number == before.volume_number:
            raise UpgradeFailedError(appliance.name, "never switched partition")
