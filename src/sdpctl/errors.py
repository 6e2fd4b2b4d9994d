"""
Error taxonomy for sdpctl.

Every failure the tool reports is an ``SdpctlError`` subclass with a stable
``kind`` and an exit code. Failures collected from concurrent work are
wrapped in a ``MultiError`` so that every root cause reaches the operator.
"""

from enum import IntEnum
from typing import Iterable, List, Optional


class ExitCode(IntEnum):
    """Process exit codes, one per error category."""

    OK = 0
    GENERAL = 1
    CANCELED = 2
    PLAN_EMPTY = 3
    CONTROLLER_FATAL = 4
    APPLIANCE_FAILED = 5
    API = 6
    TRANSPORT = 7
    INPUT = 8


# Highest priority first.
EXIT_CODE_PRECEDENCE = (
    ExitCode.CANCELED,
    ExitCode.PLAN_EMPTY,
    ExitCode.CONTROLLER_FATAL,
    ExitCode.APPLIANCE_FAILED,
    ExitCode.API,
    ExitCode.TRANSPORT,
    ExitCode.INPUT,
    ExitCode.GENERAL,
)


class SdpctlError(Exception):
    """Base class for all sdpctl errors."""

    kind = "error"
    exit_code = ExitCode.GENERAL


class TransportError(SdpctlError):
    """Network or transport failure. Callers may retry."""

    kind = "transport"
    exit_code = ExitCode.TRANSPORT


class FieldError:
    """A single field validation error from the admin API."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message

    def __repr__(self) -> str:
        return f"FieldError(field={self.field!r}, message={self.message!r})"

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class APIError(SdpctlError):
    """Structured 4xx/5xx response from the admin API."""

    kind = "api"
    exit_code = ExitCode.API

    def __init__(
        self,
        status: int,
        message: str,
        code: Optional[str] = None,
        field_errors: Optional[List[FieldError]] = None,
        request_id: Optional[str] = None,
    ):
        self.status = status
        self.code = code
        self.message = message
        self.field_errors = field_errors or []
        self.request_id = request_id
        super().__init__(self._format())

    def _format(self) -> str:
        text = f"HTTP {self.status}"
        if self.code:
            text += f" {self.code}"
        if self.message:
            text += f": {self.message}"
        for fe in self.field_errors:
            text += f"\n  - {fe}"
        if self.request_id:
            text += f" (request id {self.request_id})"
        return text


class NotFoundError(APIError):
    """A file or appliance does not exist."""

    kind = "not_found"


class FileFailedError(SdpctlError):
    """A file in the repository ended up Failed or never became Ready."""

    kind = "file_failed"
    exit_code = ExitCode.API


class VersionParseError(SdpctlError):
    kind = "version_parse"
    exit_code = ExitCode.INPUT


class VersionMismatchError(SdpctlError):
    """Two sources disagree about the same version."""

    kind = "version_mismatch"
    exit_code = ExitCode.INPUT


class UnsupportedUpgradePathError(SdpctlError):
    kind = "unsupported_upgrade_path"
    exit_code = ExitCode.INPUT


class PrimaryControllerNotFound(SdpctlError):
    kind = "primary_controller_not_found"
    exit_code = ExitCode.CONTROLLER_FATAL


class AmbiguousPrimaryController(SdpctlError):
    kind = "ambiguous_primary_controller"
    exit_code = ExitCode.CONTROLLER_FATAL


class ControllerOfflineError(SdpctlError):
    kind = "controller_offline"
    exit_code = ExitCode.CONTROLLER_FATAL


class LogServerOfflineError(SdpctlError):
    kind = "logserver_offline"
    exit_code = ExitCode.CONTROLLER_FATAL


class NothingToPrepareError(SdpctlError):
    """The plan has no actionable appliances left after filters and skips."""

    kind = "plan_empty"
    exit_code = ExitCode.PLAN_EMPTY


class NotReadyForCompleteError(SdpctlError):
    kind = "not_ready_for_complete"
    exit_code = ExitCode.CONTROLLER_FATAL


class UpgradeFailedError(SdpctlError):
    """An appliance reported an unwanted upgrade status."""

    kind = "upgrade_failed"
    exit_code = ExitCode.APPLIANCE_FAILED

    def __init__(self, appliance: str, detail: str):
        self.appliance = appliance
        self.detail = detail
        super().__init__(f"upgrade failed on {appliance}: {detail}")


class ChangeFailedError(SdpctlError):
    """A change ticket completed without success."""

    kind = "change_failed"
    exit_code = ExitCode.APPLIANCE_FAILED


class WaitTimeoutError(SdpctlError):
    """An appliance never reached the wanted status before the deadline."""

    kind = "wait_timeout"
    exit_code = ExitCode.APPLIANCE_FAILED


class CanceledByUser(SdpctlError):
    kind = "canceled_by_user"
    exit_code = ExitCode.CANCELED

    def __init__(self, message: str = "canceled by user"):
        super().__init__(message)


class CanceledByContext(SdpctlError):
    kind = "canceled_by_context"
    exit_code = ExitCode.CANCELED

    def __init__(self, message: str = "context canceled"):
        super().__init__(message)


class InvalidFilterError(SdpctlError):
    kind = "invalid_filter"
    exit_code = ExitCode.INPUT


class InvalidImageNameError(SdpctlError):
    kind = "invalid_image_name"
    exit_code = ExitCode.INPUT


class ConfigError(SdpctlError):
    kind = "config"
    exit_code = ExitCode.INPUT


class IllegalOperationError(SdpctlError):
    """The operator asked for something the Collective must never do."""

    kind = "illegal_operation"
    exit_code = ExitCode.INPUT


class TokenExpiredError(SdpctlError):
    kind = "token_expired"
    exit_code = ExitCode.INPUT


class MultiError(SdpctlError):
    """Aggregate of errors collected from concurrent work."""

    kind = "multi"

    def __init__(self, errors: Optional[Iterable[BaseException]] = None):
        self.errors: List[BaseException] = []
        for err in errors or []:
            self.append(err)
        super().__init__()

    def append(self, err: Optional[BaseException]) -> None:
        if err is None:
            return
        if isinstance(err, MultiError):
            self.errors.extend(err.errors)
        else:
            self.errors.append(err)

    def error_or_none(self) -> Optional[BaseException]:
        """Return None when empty, the sole error when there is one, else self."""
        if not self.errors:
            return None
        if len(self.errors) == 1:
            return self.errors[0]
        return self

    def __len__(self) -> int:
        return len(self.errors)

    def __bool__(self) -> bool:
        return bool(self.errors)

    def __str__(self) -> str:
        if len(self.errors) == 1:
            return f"1 error occurred:\n\t* {self.errors[0]}\n"
        lines = "\n".join(f"\t* {e}" for e in self.errors)
        return f"{len(self.errors)} errors occurred:\n{lines}\n"

    @property
    def exit_code(self) -> ExitCode:  # type: ignore[override]
        codes = {exit_code_for(e) for e in self.errors}
        for code in EXIT_CODE_PRECEDENCE:
            if code in codes:
                return code
        return ExitCode.GENERAL


def exit_code_for(exc: Optional[BaseException]) -> ExitCode:
    """Map an exception onto the process exit code."""
    if exc is None:
        return ExitCode.OK
    if isinstance(exc, KeyboardInterrupt):
        return ExitCode.CANCELED
    if isinstance(exc, SdpctlError):
        return exc.exit_code
    return ExitCode.GENERAL
