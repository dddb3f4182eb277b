"""
Age-based retention for snapshots on the local and remote tiers.

Each sweep computes `cutoff = reference_time - retention` and deletes entries
strictly older than the cutoff. Names that do not carry a timestamp are logged
and kept. Deletions are attempted one by one; a failure is recorded and the
sweep continues.
"""
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Tuple

from etcdbackup.errors import ListError, ParseError
from etcdbackup.names import is_recurring_snapshot, is_scheduled_key, parse_snapshot_time
from etcdbackup import utils
from etcdbackup.utils import get_logger

logger = get_logger(__name__)


@dataclass
class RetentionResult:
    """Outcome of one sweep: deleted names, (name, error) failures, skipped names."""

    deleted: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self):
        return not self.failed


def cutoff_time(reference_time, retention):
    return utils.ensure_utc(reference_time) - retention


def delete_local_backups(backup_dir, reference_time, retention):
    """Delete scheduled snapshots in `backup_dir` older than `reference_time - retention`."""
    result = RetentionResult()
    cutoff = cutoff_time(reference_time, retention)

    try:
        with os.scandir(backup_dir) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.warning("[Retention] Can't read backup directory: dir=%s error=%s", backup_dir, e)
        return result

    for entry in entries:
        if entry.is_dir():
            logger.warning("[Retention] Ignored directory, expecting file: name=%s", entry.name)
            result.skipped.append(entry.name)
            continue

        try:
            backup_time = parse_snapshot_time(entry.name)
        except ParseError as e:
            logger.warning("[Retention] Couldn't parse backup: name=%s error=%s", entry.name, e)
            result.skipped.append(entry.name)
            continue

        if backup_time < cutoff:
            _delete_local(backup_dir, entry.name, result)

    _log_summary('local', result)
    return result


def delete_named_backups(backup_dir, retention, prefix, now=None):
    """Delete recurring snapshots sharing `prefix` whose mtime is older than `now - retention`.

    Manually triggered snapshots with the same prefix are never touched.
    """
    result = RetentionResult()
    cutoff = cutoff_time(now or utils.now(), retention)

    try:
        with os.scandir(backup_dir) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.warning("[Retention] Can't read backup directory: dir=%s error=%s", backup_dir, e)
        result.failed.append((backup_dir, str(e)))
        return result

    for entry in entries:
        if not entry.name.startswith(prefix) or entry.is_dir():
            continue
        try:
            mtime = datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)
        except OSError as e:
            result.failed.append((entry.name, str(e)))
            continue
        if mtime < cutoff and is_recurring_snapshot(entry.name):
            _delete_local(backup_dir, entry.name, result)
        else:
            result.skipped.append(entry.name)

    _log_summary('named', result)
    return result


def delete_s3_backups(gateway, folder, reference_time, retention):
    """Delete scheduled snapshot objects older than `reference_time - retention`.

    Keys are listed under `folder` (recursively when a folder is configured);
    the folder is stripped before the timestamp is parsed and the full key is
    used for deletion.
    """
    logger.info("[Retention] Invoking delete s3 backup files: retention=%s", retention)
    result = RetentionResult()
    cutoff = cutoff_time(reference_time, retention)

    prefix = folder or ''
    recursive = bool(folder)
    to_delete = []
    try:
        for key in gateway.list(prefix=prefix, recursive=recursive):
            if not is_scheduled_key(key):
                continue
            filename = key
            if folder:
                # example key with folder: folder/timestamp_etcd.zip
                filename = key[len(f"{folder}/"):] if key.startswith(f"{folder}/") else key
            logger.debug("[Retention] object.Key: [%s], filename: [%s]", key, filename)
            try:
                backup_time = parse_snapshot_time(filename)
            except ParseError as e:
                logger.warning("[Retention] Couldn't parse s3 backup: name=%s objectKey=%s error=%s", filename, key, e)
                result.skipped.append(key)
                continue
            if backup_time < cutoff:
                logger.debug("[Retention] Adding [%s] to files to delete, backupTime: [%s], cutoffTime: [%s]", key, backup_time, cutoff)
                to_delete.append(key)
    except ListError as e:
        logger.error("[Retention] error to fetch s3 file list: %s", e)
        result.failed.append((prefix, str(e)))
        return result

    logger.debug("[Retention] Found %d files to delete", len(to_delete))
    for key in to_delete:
        logger.info("[Retention] Start to delete s3 backup file [%s]", key)
        if gateway.remove(key):
            logger.info("[Retention] Success delete s3 backup file [%s]", key)
            result.deleted.append(key)
        else:
            result.failed.append((key, 'remove failed'))

    _log_summary('s3', result)
    return result


def _delete_local(backup_dir, name, result):
    path = os.path.join(backup_dir, os.path.basename(name))
    try:
        utils.remove_file(path)
    except OSError as e:
        logger.warning("[Retention] Delete local backup failed: name=%s error=%s", name, e)
        result.failed.append((name, str(e)))
        return
    logger.info("[Retention] Deleted local backup: name=%s", name)
    result.deleted.append(name)


def _log_summary(tier, result):
    if result.deleted or result.failed:
        logger.info("[Retention] %s sweep finished: deleted=%d failed=%d", tier, len(result.deleted), len(result.failed))
    else:
        logger.debug("[Retention] %s sweep finished. No backups needed deletion.", tier)
