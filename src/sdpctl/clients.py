"""
REST client for the Appgate SDP admin API.
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import google.auth.credentials
import google.auth.exceptions
import requests
from google.auth.transport.requests import AuthorizedSession

from sdpctl.context import RunContext
from sdpctl.errors import (
    APIError,
    FieldError,
    NotFoundError,
    TokenExpiredError,
    TransportError,
)
from sdpctl.models import (
    Appliance,
    ApplianceStatus,
    ChangeTicket,
    FileResource,
    StatsSnapshot,
    UpgradeState,
)

logger = logging.getLogger(__name__)

DEFAULT_PEER_VERSION = 18


def stats_path(peer_version: int) -> str:
    return "appliances/status" if peer_version >= 18 else "stats/appliances"


class BearerTokenCredentials(google.auth.credentials.Credentials):
    """
    Static bearer token issued by the Controller at sign-in.

    The token is never refreshed during a run: once it expires, requests fail
    with a RefreshError and the operator has to sign in again.
    """

    def __init__(self, token: str, expiry: Optional[datetime] = None):
        super().__init__()
        self.token = token
        # google-auth compares expiry against naive UTC time.
        self.expiry = expiry

    def refresh(self, request) -> None:
        raise google.auth.exceptions.RefreshError(
            "the bearer token has expired, sign in again"
        )


class AdminRestClient:
    """REST client for the Controller admin API (/admin)."""

    def __init__(
        self,
        base_url: str,
        token: str,
        peer_version: int = DEFAULT_PEER_VERSION,
        token_expiry: Optional[datetime] = None,
        ca_cert: Optional[str] = None,
        timeout_s: int = 60,
    ):
        """
        Initialize the admin REST client.

        Args:
            base_url: Admin API base URL, e.g. https://controller:8443/admin
            token: Bearer token
            peer_version: Peer API version sent in the Accept header
            token_expiry: Naive UTC expiry of the token, if known
            ca_cert: Path to a PEM bundle used to verify the Controller
            timeout_s: Default request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.peer_version = peer_version
        self.timeout_s = timeout_s

        self.credentials = BearerTokenCredentials(token, token_expiry)
        # 401 is an expired or revoked token here, not something to refresh.
        self.session = AuthorizedSession(self.credentials, refresh_status_codes=())
        if ca_cert:
            self.session.verify = ca_cert

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"{self.base_url}/{path.lstrip('/')}"

    def accept_header(self, media: str = "json") -> str:
        return f"application/vnd.appgate.peer-v{self.peer_version}+{media}"

    def _request(
        self,
        method: str,
        path: str,
        ctx: Optional[RunContext] = None,
        timeout: Optional[float] = None,
        accept: str = "json",
        **kwargs,
    ) -> requests.Response:
        """
        Execute one HTTP request. Never retries.

        Raises:
            TransportError: On network failure
            TokenExpiredError: If the bearer token has expired
            APIError: On a 4xx/5xx response
        """
        if ctx is not None:
            ctx.check()
        timeout = timeout or self.timeout_s
        if ctx is not None and ctx.remaining() is not None:
            timeout = max(0.1, min(timeout, ctx.remaining()))

        headers = kwargs.pop("headers", {})
        headers.setdefault("Accept", self.accept_header(accept))
        url = self._url(path)
        try:
            resp = self.session.request(
                method, url, headers=headers, timeout=timeout, **kwargs
            )
        except google.auth.exceptions.RefreshError as e:
            raise TokenExpiredError(str(e)) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {url}: {e}") from e

        if resp.status_code >= 400:
            raise self._decode_error(resp)
        return resp

    def _decode_error(self, resp: requests.Response) -> APIError:
        """Turn an error response into an APIError."""
        request_id = resp.headers.get("X-Request-Id") or resp.headers.get(
            "Request-Id"
        )
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        field_errors = [
            FieldError(e.get("field", ""), e.get("message", ""))
            for e in body.get("errors") or []
            if isinstance(e, dict)
        ]
        message = body.get("message") or resp.reason or resp.text[:200]
        cls = NotFoundError if resp.status_code == 404 else APIError
        return cls(
            status=resp.status_code,
            message=message,
            code=body.get("id"),
            field_errors=field_errors,
            request_id=request_id if resp.status_code >= 500 else None,
        )

    @staticmethod
    def _change_id(resp: requests.Response) -> Optional[str]:
        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        return data.get("changeId") or data.get("id")

    # Appliances

    def list_appliances(self, ctx: Optional[RunContext] = None) -> List[Appliance]:
        """
        List all appliances in the Collective, ordered by name.

        Returns:
            List of Appliance objects
        """
        resp = self._request("GET", "appliances", ctx, params={"orderBy": "name"})
        return [Appliance.from_api(item) for item in resp.json().get("data", [])]

    def stats(self, ctx: Optional[RunContext] = None) -> StatsSnapshot:
        """
        Fetch live status for every appliance in one call.

        Peer API 18 and later serve /appliances/status; older Controllers
        serve /stats/appliances. Both shapes are understood.
        """
        resp = self._request("GET", stats_path(self.peer_version), ctx)
        data = resp.json()
        entries = [ApplianceStatus.from_api(item) for item in data.get("data", [])]
        return StatsSnapshot(entries=entries)

    def update_appliance(
        self, appliance_id: str, body: Dict[str, Any], ctx: Optional[RunContext] = None
    ) -> None:
        self._request("PUT", f"appliances/{appliance_id}", ctx, json=body)

    def set_controller_enabled(
        self, appliance: Appliance, enabled: bool, ctx: Optional[RunContext] = None
    ) -> None:
        """Enable or disable the Controller function of an appliance."""
        body = dict(appliance.raw)
        controller = dict(body.get("controller") or {})
        controller["enabled"] = enabled
        body["controller"] = controller
        self.update_appliance(appliance.id, body, ctx)

    # Upgrade

    def upgrade_status(
        self,
        appliance_id: str,
        ctx: Optional[RunContext] = None,
        timeout: Optional[float] = None,
    ) -> UpgradeState:
        resp = self._request(
            "GET", f"appliances/{appliance_id}/upgrade", ctx, timeout=timeout
        )
        return UpgradeState.from_api(resp.json())

    def prepare_upgrade(
        self,
        appliance_id: str,
        image_url: str,
        dev_keyring: bool = False,
        ctx: Optional[RunContext] = None,
    ) -> Optional[str]:
        """
        Ask an appliance to download and verify an upgrade image.

        Returns:
            Change id on peer API 15 and later, otherwise None

        Raises:
            APIError: 409 if an upgrade is already in progress
        """
        body = {"imageUrl": image_url, "devKeyring": dev_keyring}
        try:
            resp = self._request(
                "POST", f"appliances/{appliance_id}/upgrade/prepare", ctx, json=body
            )
        except APIError as e:
            if e.status == 409:
                e.message = f"upgrade in progress on {appliance_id}: {e.message}"
                e.args = (e._format(),)
            raise
        return self._change_id(resp)

    def complete_upgrade(
        self,
        appliance_id: str,
        switch_partition: bool,
        ctx: Optional[RunContext] = None,
    ) -> Optional[str]:
        resp = self._request(
            "POST",
            f"appliances/{appliance_id}/upgrade/complete",
            ctx,
            json={"switchPartition": switch_partition},
        )
        return self._change_id(resp)

    def switch_partition(
        self, appliance_id: str, ctx: Optional[RunContext] = None
    ) -> Optional[str]:
        resp = self._request(
            "POST", f"appliances/{appliance_id}/upgrade/switch-partition", ctx
        )
        return self._change_id(resp)

    def cancel_upgrade(
        self, appliance_id: str, ctx: Optional[RunContext] = None
    ) -> None:
        self._request("POST", f"appliances/{appliance_id}/upgrade/cancel", ctx)

    def set_maintenance(
        self, appliance_id: str, enabled: bool, ctx: Optional[RunContext] = None
    ) -> Optional[str]:
        resp = self._request(
            "POST",
            f"appliances/{appliance_id}/maintenance",
            ctx,
            json={"enabled": enabled},
        )
        return self._change_id(resp)

    def get_change(
        self, appliance_id: str, change_id: str, ctx: Optional[RunContext] = None
    ) -> ChangeTicket:
        resp = self._request(
            "GET", f"appliances/{appliance_id}/change/{change_id}", ctx
        )
        data = resp.json()
        return ChangeTicket(
            id=data.get("id", change_id),
            appliance_id=appliance_id,
            status=data.get("status", ""),
            result=data.get("result", ""),
            details=data.get("details", ""),
        )

    # File repository

    def list_files(self, ctx: Optional[RunContext] = None) -> List[FileResource]:
        resp = self._request("GET", "files", ctx)
        return [FileResource.from_api(f) for f in resp.json().get("data", [])]

    def file_status(
        self, name: str, ctx: Optional[RunContext] = None
    ) -> FileResource:
        """
        Get a file from the repository.

        Raises:
            NotFoundError: If no file has that name
        """
        resp = self._request("GET", f"files/{name}", ctx)
        return FileResource.from_api(resp.json())

    def upload_file(self, path: str, ctx: Optional[RunContext] = None) -> None:
        """Upload a local file to the repository (PUT /files, multipart)."""
        name = os.path.basename(path)
        with open(path, "rb") as fh:
            self._request(
                "PUT",
                "files",
                ctx,
                timeout=None if ctx is None else ctx.remaining(),
                headers={"Content-Disposition": f'attachment; filename="{name}"'},
                files={"file": (name, fh, "application/octet-stream")},
            )

    def upload_from_url(
        self, url: str, filename: str, ctx: Optional[RunContext] = None
    ) -> None:
        """Make the Controller fetch a remote file into its repository."""
        try:
            self._request("POST", "files", ctx, json={"url": url, "filename": filename})
        except APIError as e:
            if e.status == 409:
                e.message = f"{filename} already exists: {e.message}"
                e.args = (e._format(),)
            raise

    def delete_file(self, name: str, ctx: Optional[RunContext] = None) -> None:
        """Delete a file. A missing file is not an error."""
        try:
            self._request("DELETE", f"files/{name}", ctx)
        except NotFoundError:
            logger.debug(f"File {name} already absent from repository")

    # Force disable

    def force_disable_controllers(
        self,
        hostname: str,
        controller_ids: List[str],
        ctx: Optional[RunContext] = None,
    ) -> Tuple[List[str], Optional[str]]:
        """
        Announce disabled Controllers to the Controller at hostname.

        Returns:
            Tuple of (offline controller ids, change id)
        """
        resp = self._request(
            "POST",
            "appliances/force-disable-controllers",
            ctx,
            json={"hostname": hostname, "controllers": controller_ids},
        )
        data = resp.json() if resp.content else {}
        return list(data.get("offlineControllers") or []), data.get("changeId")

    def repartition_ip_allocations(
        self, appliance_id: str, ctx: Optional[RunContext] = None
    ) -> Optional[str]:
        resp = self._request(
            "POST", f"appliances/{appliance_id}/repartition-ip-allocations", ctx
        )
        return self._change_id(resp)

    # Backup

    def start_backup(
        self,
        appliance_id: str,
        logs: bool = False,
        audit: bool = False,
        ctx: Optional[RunContext] = None,
    ) -> str:
        resp = self._request(
            "POST",
            f"appliances/{appliance_id}/backup",
            ctx,
            json={"logs": logs, "audit": audit},
        )
        return resp.json()["id"]

    def backup_status(
        self, appliance_id: str, backup_id: str, ctx: Optional[RunContext] = None
    ) -> str:
        resp = self._request(
            "GET", f"appliances/{appliance_id}/backup/{backup_id}/status", ctx
        )
        return resp.json().get("status", "")

    def download_backup(
        self,
        appliance_id: str,
        backup_id: str,
        dest_path: str,
        ctx: Optional[RunContext] = None,
    ) -> str:
        """Stream an encrypted backup to dest_path and return the path."""
        resp = self._request(
            "GET",
            f"appliances/{appliance_id}/backup/{backup_id}",
            ctx,
            accept="gpg",
            stream=True,
        )
        with open(dest_path, "wb") as fh:
            for chunk in resp.iter_content(chunk_size=1 << 20):
                if chunk:
                    fh.write(chunk)
        return dest_path

    def delete_backup(
        self, appliance_id: str, backup_id: str, ctx: Optional[RunContext] = None
    ) -> None:
        self._request("DELETE", f"appliances/{appliance_id}/backup/{backup_id}", ctx)
