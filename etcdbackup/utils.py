"""
Utility functions shared by the backup tool.
"""
import os
import logging
from datetime import datetime, timezone


# Fixed paths used across the tool. These are centralized so they can be
# adjusted in one place; they match the layout of the etcd backup container.
BACKUP_BASE_DIR = '/backup'
K8S_BASE_DIR = '/etc/kubernetes'
TMP_STATE_FILE_PATH = '/tmp/cluster.rkestate'
LOG_DIR = '/var/log/etcd-backup'
LOG_FILE_NAME = 'etcd-backup.log'

LOG_FORMAT = '[%(levelname)s] %(asctime)s %(name)s: %(message)s'


def setup_logging(debug=False):
    """Configure root logger.

    - `debug=True` forces DEBUG; otherwise the LOG_LEVEL env var is used
      (e.g. DEBUG, INFO), defaulting to INFO.
    - If no handlers exist, installs a StreamHandler and a TimedRotatingFileHandler
      writing daily files into LOG_DIR. When LOG_DIR is not writable only the
      stream handler is kept.
    """
    if debug:
        level = logging.DEBUG
    else:
        level_name = os.environ.get('LOG_LEVEL', 'INFO').upper()
        level = getattr(logging, level_name, logging.INFO)
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()

    # Only configure handlers if none are present so tests or other
    # environments can configure logging differently
    if not root.handlers:
        sh = logging.StreamHandler()
        sh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(sh)

        try:
            os.makedirs(LOG_DIR, exist_ok=True)
            from logging.handlers import TimedRotatingFileHandler
            fh = TimedRotatingFileHandler(
                filename=os.path.join(LOG_DIR, LOG_FILE_NAME),
                when='midnight',
                backupCount=7,
                encoding='utf-8'
            )
            fh.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(fh)
        except OSError as e:
            root.warning("Failed to configure file logging (LOG_DIR=%s): %s", LOG_DIR, e)

    for handler in root.handlers:
        handler.setLevel(level)
    root.setLevel(level)
    if debug:
        root.debug("Log level set to debug")


def get_logger(name=None):
    """Return a logger for the given name (or the module logger if none)."""
    return logging.getLogger(name if name else __name__)


def now():
    """Get current datetime in UTC.

    Returns a timezone-aware datetime with tzinfo=timezone.utc to avoid naive/aware
    mismatches across the tool."""
    return datetime.now(timezone.utc)


def to_iso_z(dt):
    """Convert a datetime to an RFC3339 UTC string ending with 'Z' (second precision).

    If `dt` is None, returns None. Naive datetimes are assumed to be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def ensure_utc(dt):
    """Normalize a datetime to a timezone-aware UTC datetime.

    - If `dt` is naive (no tzinfo), it's assumed to be UTC.
    - If `dt` is timezone-aware, it is converted to UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def harden_permissions(path, logger=None, what='file'):
    """chmod `path` to 0600. Returns True on success; failures are logged, not raised."""
    try:
        os.chmod(path, 0o600)
        return True
    except OSError as e:
        (logger or get_logger(__name__)).warning(
            "changing permission of the %s failed: path=%s error=%s", what, path, e)
        return False


def remove_file(path):
    """Remove a file, ignoring a missing one. Returns True if something was removed."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False


_SIZE_UNITS = ('B', 'KiB', 'MiB', 'GiB', 'TiB')


def format_bytes(size):
    """Render an object size with binary units: '512B', '1.5MiB'."""
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0:
        return f"{int(value)}B"
    return f"{value:.1f}{_SIZE_UNITS[unit]}"


def format_duration(seconds):
    """Render a snapshot runtime: '250ms', '12.4s', '3m05s'."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s"
