"""
Configuration for etcd-backup.

All configuration comes from CLI flags, which fall back to environment
variables. The dataclasses below are built once per invocation and are
read-only afterwards.

Invariants:
    - Retry counts and intervals are passed explicitly to the components
      that use them; there is no module-level mutable state
    - Secrets are never logged
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta

from etcdbackup.errors import ConfigError
from etcdbackup import utils

DEFAULT_BACKUP_RETRIES = 4
DEFAULT_S3_RETRIES = 3
DEFAULT_FAILURE_INTERVAL = 15.0
DEFAULT_ENDPOINTS = '127.0.0.1:2379'
SERVER_PORT = 2379


def env_bool(name: str, default: bool = False) -> bool:
    """Read a boolean environment variable ('true', '1', 'yes' are true)."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class S3Config:
    """Object store configuration.

    Attributes:
        enabled: Whether snapshots are uploaded to / pruned from the bucket
        endpoint: Endpoint host (or URL); empty means AWS
        access_key: Access key, optionally base64 encoded
        secret_key: Secret key, optionally base64 encoded
        bucket: Bucket name
        region: Bucket region
        endpoint_ca: Custom CA, base64 PEM string or file path
        folder: Optional key prefix (no trailing slash)
    """

    enabled: bool = False
    endpoint: str = ''
    access_key: str = ''
    secret_key: str = ''
    bucket: str = ''
    region: str = ''
    endpoint_ca: str = ''
    folder: str = ''

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            enabled=env_bool('S3_BACKUP'),
            endpoint=os.getenv('S3_ENDPOINT', ''),
            access_key=os.getenv('S3_ACCESS_KEY', ''),
            secret_key=os.getenv('S3_SECRET_KEY', ''),
            bucket=os.getenv('S3_BUCKET_NAME', ''),
            region=os.getenv('S3_BUCKET_REGION', ''),
            endpoint_ca=os.getenv('S3_ENDPOINT_CA', ''),
            folder=os.getenv('S3_FOLDER', ''),
        )

    def key_for(self, filename: str) -> str:
        """Object key for a file name, prefixed with the folder when one is set."""
        if self.folder:
            return f"{self.folder}/{filename}"
        return filename

    def log_fields(self) -> dict:
        """Non-secret fields suitable for log context."""
        return {
            's3-endpoint': self.endpoint,
            's3-bucketName': self.bucket,
            's3-region': self.region,
            's3-endpoint-ca': bool(self.endpoint_ca),
            's3-folder': self.folder,
        }


@dataclass(frozen=True)
class EtcdCerts:
    """Client/server TLS material for etcd and the snapshot pull endpoint."""

    cacert: str = ''
    cert: str = ''
    key: str = ''

    @classmethod
    def from_env(cls) -> EtcdCerts:
        return cls(
            cacert=os.getenv('ETCD_CACERT', ''),
            cert=os.getenv('ETCD_CERT', ''),
            key=os.getenv('ETCD_KEY', ''),
        )

    def require(self) -> EtcdCerts:
        """Return self, or raise ConfigError when any path is missing."""
        if not self.cacert or not self.cert or not self.key:
            raise ConfigError("cacert, cert and key are required")
        return self


@dataclass(frozen=True)
class BackupSettings:
    """Settings for the creation pipeline and the local tier.

    Attributes:
        backup_dir: Local snapshot directory (flat)
        state_dir: Directory holding <name>.rkestate cluster state files
        endpoints: etcd endpoints passed to etcdctl
        backup_retries: Extra creation attempts after the first one
        s3_retries: Extra object store attempts after the first one
        failure_interval: Seconds to wait between creation attempts
    """

    backup_dir: str = utils.BACKUP_BASE_DIR
    state_dir: str = utils.K8S_BASE_DIR
    endpoints: str = DEFAULT_ENDPOINTS
    backup_retries: int = DEFAULT_BACKUP_RETRIES
    s3_retries: int = DEFAULT_S3_RETRIES
    failure_interval: float = DEFAULT_FAILURE_INTERVAL

    def backup_path(self, name: str) -> str:
        return os.path.join(self.backup_dir, os.path.basename(name))

    def state_file_path(self, name: str) -> str:
        return os.path.join(self.state_dir, f"{os.path.basename(name)}.rkestate")


_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h|d)')
_DURATION_UNITS = {
    'ms': timedelta(milliseconds=1),
    's': timedelta(seconds=1),
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
}


def parse_duration(value) -> timedelta:
    """Parse a duration such as '5m', '24h', '1h30m', '90s' or plain seconds.

    Raises:
        ConfigError: if the value is not a duration
    """
    if isinstance(value, timedelta):
        return value
    text = str(value).strip().lower()
    if not text:
        raise ConfigError("empty duration")
    if re.fullmatch(r'\d+(?:\.\d+)?', text):
        return timedelta(seconds=float(text))

    pos = 0
    total = timedelta(0)
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total
