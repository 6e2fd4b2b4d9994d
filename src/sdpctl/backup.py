"""
Encrypted appliance backups taken before an upgrade is completed.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Dict, List, Optional

from sdpctl.clients import AdminRestClient
from sdpctl.context import RunContext
from sdpctl.errors import MultiError
from sdpctl.models import Appliance
from sdpctl.retry import RetryPolicy, Classification, retry

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_DESTINATION = os.path.join("~", "Downloads", "appgate", "backup")
BACKUP_POLL_POLICY = RetryPolicy(2.0, 1.5, 0.3, 10.0, 30 * 60)


class _BackupPending(Exception):
    pass


def _classify(exc: BaseException) -> Classification:
    if isinstance(exc, _BackupPending):
        return Classification.RETRYABLE
    return Classification.PERMANENT


def backup_filename(destination: str, appliance: Appliance, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return os.path.join(destination, f"appgate_backup_{appliance.name}_{stamp}.bkp")


class BackupRunner:
    """Backs up appliances concurrently and downloads the encrypted files."""

    def __init__(
        self,
        api: AdminRestClient,
        destination: str = DEFAULT_BACKUP_DESTINATION,
        ctx: Optional[RunContext] = None,
        poll_policy: RetryPolicy = BACKUP_POLL_POLICY,
        logs: bool = False,
        audit: bool = False,
    ):
        self.api = api
        self.destination = os.path.expanduser(destination)
        self.ctx = ctx or RunContext()
        self.poll_policy = poll_policy
        self.logs = logs
        self.audit = audit

    def backup_one(self, appliance: Appliance) -> str:
        """
        Take one backup and download it.

        Returns:
            Path of the downloaded .bkp file
        """
        backup_id = self.api.start_backup(appliance.id, self.logs, self.audit, self.ctx)
        logger.info(f"Backup {backup_id} started on {appliance.name}")

        def poll() -> str:
            status = self.api.backup_status(appliance.id, backup_id, self.ctx)
            logger.debug(f"Backup of {appliance.name} is {status}")
            if status != "done":
                raise _BackupPending(f"backup of {appliance.name} is {status}")
            return status

        retry(self.poll_policy, poll, _classify, self.ctx)
        path = self.api.download_backup(
            appliance.id, backup_id, backup_filename(self.destination, appliance), self.ctx
        )
        try:
            self.api.delete_backup(appliance.id, backup_id, self.ctx)
        except Exception as e:
            logger.warning(f"Could not clean up backup {backup_id} on {appliance.name}: {e}")
        logger.info(f"Backup of {appliance.name} saved to {path}")
        return path

    def run(self, appliances: List[Appliance], max_workers: int = 5) -> Dict[str, str]:
        """
        Back up every appliance.

        Returns:
            Mapping of appliance name to backup file

        Raises:
            MultiError: One entry per failed backup
        """
        os.makedirs(self.destination, mode=0o700, exist_ok=True)
        paths: Dict[str, str] = {}
        if not appliances:
            return paths
        errors = MultiError()
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(appliances)))) as pool:
            futures = {pool.submit(self.backup_one, a): a for a in appliances}
            for fut in as_completed(futures):
                appliance = futures[fut]
                try:
                    paths[appliance.name] = fut.result()
                except Exception as e:
                    logger.error(f"Backup of {appliance.name} failed: {e}")
                    errors.append(e)
        err = errors.error_or_none()
        if err is not None:
            raise err
        return paths
