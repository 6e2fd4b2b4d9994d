"""
Configuration management for sdpctl.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Mapping, Optional
from urllib.parse import urlparse

from sdpctl.errors import ConfigError, TokenExpiredError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30 * 60
MIN_TIMEOUT = 15 * 60
DEFAULT_THROTTLE = 5
DEFAULT_PEER_VERSION = 18
CONFIG_FILENAME = "config.json"


def default_config_dir(environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    if environ.get("SDPCTL_CONFIG_DIR"):
        return environ["SDPCTL_CONFIG_DIR"]
    base = environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(base, "sdpctl")


def read_config_file(config_dir: str) -> dict:
    """
    Read config.json from config_dir. A missing or empty file is an empty config.

    Raises:
        ConfigError: If the file is not valid JSON
    """
    path = os.path.join(config_dir, CONFIG_FILENAME)
    if not os.path.isfile(path):
        return {}
    with open(path) as f:
        raw = f.read()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ConfigError(f"invalid configuration file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"invalid configuration file {path}: expected an object")
    return data


def normalize_url(url: str) -> str:
    """Force https and default the admin API path."""
    if not url:
        raise ConfigError("no address set, use --url or SDPCTL_URL")
    if "://" not in url:
        url = f"https://{url}"
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ConfigError(f"invalid address {url}")
    netloc = parsed.netloc if parsed.port else f"{parsed.netloc}:8443"
    path = parsed.path.rstrip("/") or "/admin"
    return f"https://{netloc}{path}"


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 expiry into naive UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring invalid token expiry {value!r}")
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@dataclass
class SdpctlConfig:
    """Configuration for one sdpctl invocation."""

    url: str
    bearer: str
    token_expiry: Optional[datetime] = None
    peer_version: int = 0
    ca_cert: Optional[str] = None
    timeout: int = DEFAULT_TIMEOUT
    throttle: int = DEFAULT_THROTTLE
    no_interactive: bool = False
    ci_mode: bool = False
    verbose: bool = False
    log_file: str = "sdpctl.log"
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    order_by: List[str] = field(default_factory=lambda: ["name"])
    descending: bool = False
    docker_registry: Optional[str] = None
    config_dir: str = ""

    @property
    def admin_hostname(self) -> str:
        return urlparse(self.url).hostname or ""

    @classmethod
    def from_args(cls, args, environ: Optional[Mapping[str, str]] = None) -> "SdpctlConfig":
        """
        Create configuration from command-line arguments.

        Flags win over environment variables, which win over config.json.

        Args:
            args: Parsed argparse arguments
            environ: Environment, defaults to os.environ

        Returns:
            SdpctlConfig instance

        Raises:
            ConfigError: If no URL or token is available
        """
        environ = os.environ if environ is None else environ
        config_dir = default_config_dir(environ)
        stored = read_config_file(config_dir)

        def pick(flag_name: str, env_name: Optional[str], key: Optional[str]):
            value = getattr(args, flag_name, None)
            if value:
                return value
            if env_name and environ.get(env_name):
                return environ[env_name]
            if key:
                return stored.get(key)
            return None

        url = normalize_url(pick("url", "SDPCTL_URL", "url") or "")
        bearer = pick("bearer", "SDPCTL_BEARER", "bearer")
        if not bearer:
            raise ConfigError("no bearer token, sign in or set SDPCTL_BEARER")

        timeout = getattr(args, "timeout", None) or DEFAULT_TIMEOUT
        if timeout < MIN_TIMEOUT:
            logger.warning(
                f"Timeout {timeout}s is less than the minimum of {MIN_TIMEOUT}s, "
                f"using the default of {DEFAULT_TIMEOUT}s"
            )
            timeout = DEFAULT_TIMEOUT

        verbose = bool(getattr(args, "verbose", False))
        if environ.get("DEBUG", "").lower() in ("1", "true", "yes"):
            verbose = True
        if environ.get("SDPCTL_LOG_LEVEL", "").lower() == "debug":
            verbose = True

        return cls(
            url=url,
            bearer=bearer,
            token_expiry=(
                _parse_expiry(stored.get("expires_at"))
                if bearer == stored.get("bearer")
                else None
            ),
            peer_version=int(pick("api_version", None, "api_version") or 0),
            ca_cert=pick("ca_cert", None, "pem_filepath"),
            timeout=timeout,
            throttle=max(1, getattr(args, "throttle", None) or DEFAULT_THROTTLE),
            no_interactive=bool(getattr(args, "no_interactive", False)),
            ci_mode=bool(getattr(args, "ci_mode", False)),
            verbose=verbose,
            log_file=getattr(args, "log_file", None) or "sdpctl.log",
            include=list(getattr(args, "include", None) or []),
            exclude=list(getattr(args, "exclude", None) or []),
            order_by=list(getattr(args, "order_by", None) or ["name"]),
            descending=bool(getattr(args, "descending", False)),
            docker_registry=pick("docker_registry", "SDPCTL_DOCKER_REGISTRY", None),
            config_dir=config_dir,
        )

    def ensure_token_valid(self, deadline_seconds: float, now: Optional[datetime] = None) -> None:
        """
        Raises:
            TokenExpiredError: If the token expires before the deadline
        """
        if self.token_expiry is None:
            return
        now = now or datetime.now(timezone.utc).replace(tzinfo=None)
        if self.token_expiry < now + timedelta(seconds=deadline_seconds):
            raise TokenExpiredError(
                f"the bearer token expires at {self.token_expiry.isoformat()}Z, "
                f"before the {int(deadline_seconds // 60)} minute deadline of this "
                "operation. Sign in again"
            )
