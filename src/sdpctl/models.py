"""
Data models for the Appgate SDP Collective.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Function(Enum):
    """Appliance functions (capabilities)."""

    CONTROLLER = "Controller"
    GATEWAY = "Gateway"
    LOGSERVER = "LogServer"
    LOGFORWARDER = "LogForwarder"
    PORTAL = "Portal"
    CONNECTOR = "Connector"


# Display order for active functions.
FUNCTION_ORDER = [
    Function.CONTROLLER,
    Function.GATEWAY,
    Function.LOGSERVER,
    Function.LOGFORWARDER,
    Function.PORTAL,
    Function.CONNECTOR,
]

# Key of each function object in the appliance JSON.
_FUNCTION_KEYS = {
    Function.CONTROLLER: "controller",
    Function.GATEWAY: "gateway",
    Function.LOGSERVER: "logServer",
    Function.LOGFORWARDER: "logForwarder",
    Function.PORTAL: "portal",
    Function.CONNECTOR: "connector",
}


class _OpenEnum(Enum):
    """Enum that keeps values it does not know as UNKNOWN plus the raw string."""

    @classmethod
    def parse(cls, value: Optional[str]):
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN  # type: ignore[attr-defined]


class UpgradeStatus(_OpenEnum):
    IDLE = "idle"
    STARTED = "started"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    READY = "ready"
    INSTALLING = "installing"
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ApplianceState(_OpenEnum):
    APPLIANCE_READY = "appliance_ready"
    CONTROLLER_READY = "controller_ready"
    SINGLE_CONTROLLER_READY = "single_controller_ready"
    MULTI_CONTROLLER_READY = "multi_controller_ready"
    UNKNOWN = "unknown"


class HealthStatus(_OpenEnum):
    HEALTHY = "healthy"
    BUSY = "busy"
    WARNING = "warning"
    ERROR = "error"
    NOT_AVAILABLE = "n/a"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


ONLINE_STATUSES = {
    HealthStatus.HEALTHY,
    HealthStatus.BUSY,
    HealthStatus.WARNING,
    HealthStatus.ERROR,
}

NOT_BUSY_STATUSES = {
    HealthStatus.HEALTHY,
    HealthStatus.WARNING,
    HealthStatus.ERROR,
    HealthStatus.NOT_AVAILABLE,
    HealthStatus.OFFLINE,
}

# Every "ready" flavour an appliance may report after an upgrade.
READY_STATES = {
    ApplianceState.APPLIANCE_READY,
    ApplianceState.CONTROLLER_READY,
    ApplianceState.SINGLE_CONTROLLER_READY,
    ApplianceState.MULTI_CONTROLLER_READY,
}


class FileStatus(_OpenEnum):
    IN_PROGRESS = "InProgress"
    UPLOADING = "Uploading"
    READY = "Ready"
    FAILED = "Failed"
    UNKNOWN = "unknown"


class SkipReason(Enum):
    """Why an appliance is left out of an upgrade plan."""

    OFFLINE = "appliance is offline"
    FILTERED = "filtered using the '--include' and/or '--exclude' flag"
    ALREADY_PREPARED = "appliance is already prepared for upgrade with a higher or equal version"
    UNSUPPORTED_UPGRADE_PATH = "unsupported upgrade path"
    NOT_PREPARED = "appliance is not prepared for upgrade"
    STATS_UNAVAILABLE = "failed to find appliance stats"


@dataclass
class Appliance:
    """An appliance as returned by GET /appliances."""

    id: str
    name: str
    site: str = ""
    site_name: str = ""
    hostname: str = ""
    admin_hostname: str = ""
    peer_hostname: str = ""
    peer_https_port: int = 443
    activated: bool = True
    functions: Dict[Function, bool] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    peer_version: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Appliance":
        functions = {}
        for fn, key in _FUNCTION_KEYS.items():
            if isinstance(data.get(key), dict):
                functions[fn] = bool(data[key].get("enabled", False))
        admin = data.get("adminInterface") or {}
        peer = data.get("peerInterface") or {}
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            site=data.get("site", "") or "",
            site_name=data.get("siteName", "") or "",
            hostname=data.get("hostname", "") or "",
            admin_hostname=admin.get("hostname", "") or "",
            peer_hostname=peer.get("hostname", "") or "",
            peer_https_port=int(peer.get("httpsPort", 443) or 443),
            activated=bool(data.get("activated", False)),
            functions=functions,
            tags=list(data.get("tags") or []),
            peer_version=int(data.get("version", 0) or 0),
            raw=data,
        )

    def is_enabled(self, fn: Function) -> bool:
        return self.functions.get(fn, False)

    def enabled_functions(self) -> List[Function]:
        return [fn for fn in FUNCTION_ORDER if self.is_enabled(fn)]

    @property
    def real_hostname(self) -> str:
        """Hostname other appliances use to reach this one."""
        return self.peer_hostname or self.hostname


@dataclass
class UpgradeState:
    status: UpgradeStatus = UpgradeStatus.UNKNOWN
    details: str = ""
    raw_status: str = ""

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "UpgradeState":
        data = data or {}
        raw = data.get("status", "") or ""
        return cls(
            status=UpgradeStatus.parse(raw),
            details=data.get("details", "") or "",
            raw_status=raw,
        )


@dataclass
class ApplianceStatus:
    """Live stats for one appliance."""

    id: str
    name: str = ""
    online: Optional[bool] = None
    status: HealthStatus = HealthStatus.UNKNOWN
    state: ApplianceState = ApplianceState.UNKNOWN
    raw_state: str = ""
    version: str = ""
    volume_number: Optional[float] = None
    disk: float = 0.0
    upgrade: UpgradeState = field(default_factory=UpgradeState)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ApplianceStatus":
        details = data.get("details") or {}
        state = data.get("state", "") or ""
        volume = details.get("volumeNumber", data.get("volumeNumber"))
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            online=data.get("online"),
            status=HealthStatus.parse(data.get("status")),
            state=ApplianceState.parse(state),
            raw_state=state,
            version=data.get("applianceVersion") or data.get("version") or "",
            volume_number=volume,
            disk=float(data.get("disk", 0) or 0),
            upgrade=UpgradeState.from_api(details.get("upgrade") or data.get("upgrade")),
        )

    @property
    def is_online(self) -> bool:
        if self.online:
            return True
        return self.status in ONLINE_STATUSES


@dataclass
class StatsSnapshot:
    """One aggregate stats response, indexed by appliance id."""

    entries: List[ApplianceStatus] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=datetime.now)

    def get(self, appliance_id: str) -> Optional[ApplianceStatus]:
        for entry in self.entries:
            if entry.id == appliance_id:
                return entry
        return None


@dataclass
class FileResource:
    """A file in the primary Controller's file repository."""

    name: str
    status: FileStatus = FileStatus.UNKNOWN
    failure_reason: str = ""
    created: Optional[str] = None
    modified: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "FileResource":
        return cls(
            name=data.get("name", ""),
            status=FileStatus.parse(data.get("status")),
            failure_reason=data.get("failureReason", "") or "",
            created=data.get("creationTime"),
            modified=data.get("lastModifiedTime"),
        )


@dataclass
class ChangeTicket:
    """Handle for an asynchronous admin operation on one appliance."""

    id: str
    appliance_id: str
    status: str = "pending"
    result: str = ""
    details: str = ""

    @property
    def running(self) -> bool:
        return self.status not in ("completed",)

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and self.result == "success"


@dataclass
class SkippedAppliance:
    appliance: Appliance
    reason: SkipReason
    detail: str = ""

    def __str__(self) -> str:
        text = f"{self.appliance.name}: {self.reason.value}"
        if self.detail:
            text += f" ({self.detail})"
        return text


@dataclass
class UpgradeResult:
    """Result of one appliance in a prepare, complete or cancel run."""

    appliance_name: str
    site_name: str
    phase: str
    status: str  # "success", "failed", "skipped"
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration_seconds: Optional[float] = None
    target_version: Optional[str] = None
    error_message: Optional[str] = None
