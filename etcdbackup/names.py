"""
Snapshot naming conventions.

Scheduled snapshots are named `<RFC3339 timestamp>_etcd`; snapshots triggered
from the management plane are named `c-<cluster>-<type><provider>-...` where
type is `r` (recurring) or `m` (manual) and provider is `l` (local) or `s` (s3).
Archived snapshots carry an extra `.zip` suffix.
"""
import os
import re
from datetime import datetime, timedelta, timezone
from urllib.parse import unquote_plus

from etcdbackup.archive import COMPRESSED_EXTENSION
from etcdbackup.errors import NotFoundError, ParseError
from etcdbackup import utils
from etcdbackup.utils import get_logger

logger = get_logger(__name__)

SCHEDULED_SUFFIX = '_etcd'

_NAME_PREFIX_RE = re.compile(r'^c-[a-z0-9].*?-')
_RECURRING_RE = re.compile(r'^c-[a-z0-9].*?-r.-')
_SCHEDULED_KEY_RE = re.compile(r'.+_etcd(|\.' + COMPRESSED_EXTENSION + r')$')
_RFC3339_RE = re.compile(
    r'^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$')


def is_compressed(name):
    return name.endswith(f".{COMPRESSED_EXTENSION}")


def compressed_name(name):
    return f"{name}.{COMPRESSED_EXTENSION}"


def decompressed_name(name):
    """Strip the last extension segment of `name` ('a.b.zip' -> 'a.b')."""
    return name[:len(name) - len(_ext(name))]


def _ext(name):
    # Same rule as a path extension: the suffix from the final dot of the last element
    base = name.rsplit('/', 1)[-1]
    idx = base.rfind('.')
    if idx == -1:
        return ''
    return base[idx:]


# Object stores may return keys percent-encoded on list while expecting the
# plain form on get; both forms are tried, in this order.
KEY_TRANSFORMS = (
    ('literal', lambda key: key),
    ('decoded', unquote_plus),
)


def resolve_ambiguous_prefix(candidates, requested_name):
    """Return the first candidate key that corresponds to `requested_name`.

    A key matches when its decompressed name equals `requested_name` after one of
    KEY_TRANSFORMS; the key is returned in that same transformed form.

    Raises:
        NotFoundError: if no candidate matches
    """
    for key in candidates:
        stripped = decompressed_name(key)
        for label, transform in KEY_TRANSFORMS:
            if transform(stripped) == requested_name:
                logger.debug("[Download] Matched object key: key=%s requested=%s form=%s", key, requested_name, label)
                return transform(key)
    raise NotFoundError(f"no backups found matching [{requested_name}]")


def name_prefix(name):
    """Return the cluster prefix (`c-<id>-`) of a name, or '' when there is none."""
    m = _NAME_PREFIX_RE.match(name)
    return m.group(0) if m else ''


def is_recurring_snapshot(name):
    """True if `name` was produced by a recurring (scheduled) snapshot policy."""
    return bool(_RECURRING_RE.match(name))


def is_scheduled_key(key):
    """True for `<anything>_etcd` and `<anything>_etcd.zip`."""
    return bool(_SCHEDULED_KEY_RE.match(key))


def recurring_name(tick_time=None):
    """Name for a snapshot taken by the scheduler at `tick_time`."""
    return f"{utils.to_iso_z(tick_time or utils.now())}{SCHEDULED_SUFFIX}"


def parse_snapshot_time(name):
    """Parse the RFC3339 timestamp before the first '_' of `name`.

    Only the full RFC3339 form is accepted (date, 'T', hh:mm:ss, optional
    fraction, 'Z' or a +hh:mm offset); any other ISO-8601 variant is rejected.

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        ParseError: if the prefix is not an RFC3339 timestamp with an offset
    """
    base = os.path.basename(name)
    stamp = base.split('_', 1)[0]
    m = _RFC3339_RE.match(stamp)
    if not m:
        raise ParseError(f"no RFC3339 timestamp in snapshot name [{name}]")

    year, month, day, hour, minute, second, fraction, offset = m.groups()
    # Fractions of any length are cut or padded to microseconds
    micro = int((fraction or '0')[:6].ljust(6, '0'))
    try:
        if offset in ('Z', 'z'):
            tz = timezone.utc
        else:
            sign = -1 if offset[0] == '-' else 1
            tz = timezone(sign * timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6])))
        parsed = datetime(int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz)
    except ValueError as e:
        raise ParseError(f"couldn't parse snapshot name [{name}]: {e}") from e
    return parsed.astimezone(timezone.utc)
