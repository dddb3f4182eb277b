"""
Snapshot creation pipeline.

One `create` call is a bounded-retry unit: health check, snapshot, bundle the
cluster state file, archive, clean up, harden permissions. Uploading is a
separate step run once per successful creation; its failure never turns a
created snapshot into a failed one.
"""
import os
import time
from dataclasses import dataclass
from typing import Optional

from etcdbackup.archive import CONTENT_TYPE, compress_files
from etcdbackup.config import BackupSettings, S3Config
from etcdbackup.errors import ArchiveError, BackupError, ToolInvocationError
from etcdbackup.names import name_prefix, recurring_name
from etcdbackup.notifications import send_backup_failure_notification
from etcdbackup.retention import RetentionResult, delete_local_backups, delete_named_backups, delete_s3_backups
from etcdbackup.s3 import S3Gateway
from etcdbackup import utils
from etcdbackup.utils import get_logger

logger = get_logger(__name__)


@dataclass
class CycleResult:
    """What one scheduled cycle did."""

    name: str
    archive_path: Optional[str] = None
    uploaded: bool = False
    local_retention: Optional[RetentionResult] = None
    remote_retention: Optional[RetentionResult] = None
    error: Optional[str] = None

    @property
    def created(self):
        return self.archive_path is not None


class SnapshotExecutor:
    """Creates snapshots, uploads them and applies retention."""

    def __init__(self, settings: BackupSettings, tool, s3_config: Optional[S3Config] = None,
                 gateway_factory=None, state_fetcher=None, sleep=time.sleep,
                 notify=send_backup_failure_notification):
        """
        Args:
            settings: BackupSettings (paths, retry counts, failure interval)
            tool: SnapshotTool used for health checks and snapshots
            s3_config: S3Config; uploads happen only when it is enabled
            gateway_factory: Callable returning a connected S3Gateway
            state_fetcher: ClusterStateFetcher for scheduled runs (optional)
            sleep: Sleep function used between attempts
            notify: Callable(name, stage, error) for failure notifications
        """
        self.settings = settings
        self.tool = tool
        self.s3_config = s3_config or S3Config()
        self.gateway_factory = gateway_factory or (
            lambda: S3Gateway.connect(self.s3_config, retries=self.settings.s3_retries))
        self.state_fetcher = state_fetcher
        self._sleep = sleep
        self._notify = notify

    # ------------------------------------------------------------------ create

    def create(self, name):
        """Create `<backup_dir>/<name>.zip`, retrying up to `backup_retries` times.

        Returns:
            Path of the archive

        Raises:
            The error of the last failed attempt
        """
        backup_file = self.settings.backup_path(name)
        state_file = self.settings.state_file_path(name)
        attempts = self.settings.backup_retries + 1
        last_error = None

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self._sleep(self.settings.failure_interval)
            try:
                return self._create_attempt(name, attempt, backup_file, state_file)
            except (ToolInvocationError, ArchiveError, OSError) as e:
                last_error = e
                logger.warning("[Backup] Backup failed: attempt=%d name=%s error=%s", attempt, name, e)

        logger.error("[Backup] Giving up after %d attempts: name=%s error=%s", attempts, name, last_error)
        self._notify(name, 'create', last_error)
        raise last_error

    def _create_attempt(self, name, attempt, backup_file, state_file):
        healthy, output = self.tool.health()
        if not healthy:
            logger.warning("[Backup] Checking member health failed from etcd member: attempt=%d data=%s", attempt, output)
            raise ToolInvocationError(f"etcd member health check failed: {output}", output=output)

        start_time = time.monotonic()
        self.tool.save(backup_file)
        runtime = time.monotonic() - start_time

        to_compress = [backup_file]
        if os.path.exists(state_file):
            to_compress.append(state_file)

        archive_path = compress_files(backup_file, to_compress)

        # The archive now holds everything; leftovers are only logged
        for path in to_compress:
            try:
                utils.remove_file(path)
            except OSError as e:
                logger.warning("[Backup] Removing uncompressed file failed: attempt=%d path=%s error=%s", attempt, path, e)

        logger.info("[Backup] Created local backup: name=%s runtime=%s", name, utils.format_duration(runtime))

        try:
            os.chmod(archive_path, 0o600)
        except OSError as e:
            logger.warning("[Backup] changing permission of the compressed snapshot failed: attempt=%d error=%s", attempt, e)
            raise
        return archive_path

    # ------------------------------------------------------------------ upload

    def upload(self, name, archive_path, gateway=None):
        """Upload an archive once. Returns True if the bucket holds the snapshot afterwards.

        Failures are logged (and notified) but never raised.
        """
        if not self.s3_config.enabled:
            return False

        own_gateway = gateway is None
        if own_gateway:
            gateway = self._connect(name)
            if gateway is None:
                return False

        key = self.s3_config.key_for(os.path.basename(archive_path))
        try:
            if self._already_uploaded(gateway, key):
                logger.info("[Backup] Skipping upload to s3 because snapshot already exists "
                            "and versioning is not enabled for the bucket: name=%s", name)
                return True
            gateway.put(key, archive_path, CONTENT_TYPE)
            return True
        except BackupError as e:
            logger.error("[Backup] Upload to s3 failed: name=%s key=%s error=%s", name, key, e)
            self._notify(name, 'upload', e)
            return False
        finally:
            if own_gateway:
                gateway.close()

    def _already_uploaded(self, gateway, key):
        # A failed lookup means unknown state; upload anyway
        try:
            if not gateway.exists(key):
                return False
            return not gateway.versioning_enabled()
        except Exception as e:
            logger.info("[Backup] Could not determine bucket versioning, uploading anyway: key=%s error=%s", key, e)
            return False

    def _connect(self, name):
        try:
            return self.gateway_factory()
        except BackupError as e:
            logger.warning("[S3] Error while trying to configure s3 client: %s error=%s", self.s3_config.log_fields(), e)
            self._notify(name, 'upload', e)
            return None

    # ------------------------------------------------------------------ runs

    def run_once(self, name, retention=None):
        """Take one named snapshot, upload it, then prune older recurring snapshots of the same cluster.

        Raises:
            The creation error when every attempt failed
        """
        logger.info("[Backup] Initializing Onetime Backup: name=%s", name)
        archive_path = self.create(name)
        if self.s3_config.enabled:
            self.upload(name, archive_path)

        prefix = name_prefix(name)
        # Named backups are only pruned with a retention period and a cluster name prefix
        if retention and prefix:
            delete_named_backups(self.settings.backup_dir, retention, prefix)
        return archive_path

    def run_cycle(self, tick_time, retention):
        """Run one scheduled cycle at `tick_time`. Never raises for backup failures."""
        name = recurring_name(tick_time)
        result = CycleResult(name=name)

        if self.state_fetcher is not None:
            try:
                self.state_fetcher.write_state_file(name)
            except (ToolInvocationError, ValueError, OSError) as e:
                # The snapshot is still taken without a state file
                logger.warning("[Backup] Error while trying to retrieve cluster state from cluster: name=%s error=%s", name, e)

        try:
            result.archive_path = self.create(name)
        except (BackupError, OSError) as e:
            result.error = str(e)
            return result

        result.local_retention = delete_local_backups(self.settings.backup_dir, tick_time, retention)

        if not self.s3_config.enabled:
            return result

        gateway = self._connect(name)
        if gateway is None:
            return result
        try:
            result.uploaded = self.upload(name, result.archive_path, gateway=gateway)
            if result.uploaded:
                result.remote_retention = delete_s3_backups(gateway, self.s3_config.folder, tick_time, retention)
        finally:
            gateway.close()
        return result
