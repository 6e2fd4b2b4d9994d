"""
Manage upgrade images and LogServer bundles in the primary Controller's
file repository.
"""

import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from sdpctl.clients import AdminRestClient
from sdpctl.context import RunContext
from sdpctl.errors import FileFailedError, InvalidImageNameError, NotFoundError
from sdpctl.models import Appliance, FileResource, FileStatus
from sdpctl.progress import NullSink, ProgressSink
from sdpctl.registry import DEFAULT_REGISTRY, RegistryBundler, bundle_name
from sdpctl.retry import Classification, RetryPolicy, retry
from sdpctl.version import Version, image_filename, is_url

logger = logging.getLogger(__name__)

FILE_POLL_POLICY = RetryPolicy(2.0, 1.0, 0.0, 2.0, 60 * 60)
LOGSERVER_BUNDLE_RE = re.compile(r"^logserver-\d+\.\d+\.zip$")
LOGSERVER_BUNDLE_MIN_VERSION = (6, 2, 0)


class _FilePending(Exception):
    """The file is still being uploaded or fetched."""


def _classify_pending(exc: BaseException) -> Classification:
    if isinstance(exc, (_FilePending, NotFoundError)):
        return Classification.RETRYABLE
    return Classification.PERMANENT


@dataclass
class StagedFile:
    """Where appliances download a file from, and whether we put it there."""

    name: str
    url: str
    on_controller: bool


class FileRepository:
    """Single writer for the primary Controller's file repository."""

    def __init__(
        self,
        api: AdminRestClient,
        ctx: Optional[RunContext] = None,
        sink: Optional[ProgressSink] = None,
        poll_policy: RetryPolicy = FILE_POLL_POLICY,
    ):
        self.api = api
        self.ctx = ctx or RunContext()
        self.sink = sink or NullSink()
        self.poll_policy = poll_policy
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def file_status(self, name: str) -> FileResource:
        """
        Raises:
            NotFoundError: If the repository has no such file
        """
        return self.api.file_status(name, self.ctx)

    def delete(self, name: str) -> None:
        self.api.delete_file(name, self.ctx)
        logger.info(f"Deleted {name} from the file repository")

    def list(self) -> List[FileResource]:
        return self.api.list_files(self.ctx)

    def controller_url(self, primary: Appliance, name: str) -> str:
        """Download URL of a repository file as seen by other appliances."""
        host = primary.real_hostname
        # Peer API 12 appliances need the peer port spelled out.
        if self.api.peer_version < 13:
            return f"controller://{host}:{primary.peer_https_port}/{name}"
        return f"controller://{host}/{name}"

    def _existing_ready(self, name: str) -> bool:
        try:
            existing = self.file_status(name)
        except NotFoundError:
            return False
        if existing.status is FileStatus.READY:
            logger.info(f"{name} is already in the file repository, reusing it")
            return True
        logger.info(f"{name} exists with status {existing.status.value}, overwriting it")
        self.api.delete_file(name, self.ctx)
        return False

    def wait_until_ready(self, name: str) -> FileResource:
        """
        Poll a file until it is Ready.

        Raises:
            FileFailedError: If the file ends up Failed or never settles
        """
        tracker = self.sink.tracker(name)

        def op() -> FileResource:
            f = self.file_status(name)
            tracker.update(f.status.value)
            if f.status is FileStatus.READY:
                return f
            if f.status is FileStatus.FAILED:
                raise FileFailedError(f"{name} failed: {f.failure_reason or 'unknown reason'}")
            raise _FilePending(f"{name} is {f.status.value}")

        try:
            result = retry(self.poll_policy, op, _classify_pending, self.ctx)
        except (_FilePending, NotFoundError) as e:
            tracker.fail(str(e))
            raise FileFailedError(f"{name} never became ready: {e}") from e
        except Exception as e:
            tracker.fail(str(e))
            raise
        tracker.complete("ready")
        return result

    def _stage(self, source: str, name: str, primary: Appliance, host_on_controller: bool) -> StagedFile:
        with self._lock_for(name):
            if is_url(source) and not host_on_controller:
                logger.info(f"Appliances will download {name} from {source}")
                return StagedFile(name=name, url=source, on_controller=False)

            if not self._existing_ready(name):
                if is_url(source):
                    logger.info(f"Asking the primary Controller to fetch {source}")
                    self.api.upload_from_url(source, name, self.ctx)
                else:
                    logger.info(f"Uploading {source} to the primary Controller")
                    self.api.upload_file(source, self.ctx)
                self.wait_until_ready(name)
            return StagedFile(
                name=name, url=self.controller_url(primary, name), on_controller=True
            )

    def ensure_image(
        self, image_source: str, primary: Appliance, host_on_controller: bool = False
    ) -> StagedFile:
        """
        Make the upgrade image available to the appliances.

        Local images are uploaded. Remote images are fetched by the Controller
        when host_on_controller is set, and otherwise downloaded by each
        appliance directly.
        """
        name = image_filename(image_source)
        return self._stage(image_source, name, primary, host_on_controller)

    def ensure_logserver_bundle(
        self,
        target_version: Version,
        primary: Appliance,
        bundle_source: Optional[str] = None,
        registry: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Optional[StagedFile]:
        """
        Make the LogServer container bundle available for 6.2 and later.

        Without a bundle_source the bundle is built from the registry. The
        tag is MAJOR.MINOR of the target unless SDPCTL_DOCKER_TAG is set.

        Returns:
            The staged bundle, or None when the target does not need one
        """
        if target_version.core < LOGSERVER_BUNDLE_MIN_VERSION:
            return None
        environ = os.environ if environ is None else environ

        if bundle_source:
            name = os.path.basename(bundle_source.split("?", 1)[0])
            if not name.endswith(".zip"):
                raise InvalidImageNameError(f"LogServer bundle {name} is not a .zip archive")
            return self._stage(bundle_source, name, primary, host_on_controller=True)

        tag = environ.get("SDPCTL_DOCKER_TAG") or f"{target_version.major}.{target_version.minor}"
        name = bundle_name(tag)
        with self._lock_for(name):
            if self._existing_ready(name):
                return StagedFile(name=name, url=self.controller_url(primary, name), on_controller=True)
        bundler = RegistryBundler(
            registry or environ.get("SDPCTL_DOCKER_REGISTRY") or DEFAULT_REGISTRY,
            environ=environ,
            ctx=self.ctx,
        )
        with tempfile.TemporaryDirectory(prefix="sdpctl-") as tmp:
            path = bundler.build(os.path.join(tmp, name), tag)
            return self._stage(path, name, primary, host_on_controller=True)

    def cleanup_logserver_bundles(self) -> None:
        """Delete LogServer bundles left in the repository. Failures only warn."""
        try:
            files = self.list()
        except Exception as e:
            logger.warning(f"Could not list the file repository: {e}")
            return
        for f in files:
            if not LOGSERVER_BUNDLE_RE.match(f.name):
                continue
            try:
                self.delete(f.name)
            except Exception as e:
                logger.warning(f"Could not delete {f.name}: {e}")
