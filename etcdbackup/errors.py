"""
Exception types raised across the backup tool.

Library modules raise these; only the CLI turns them into exit codes.
"""


class BackupError(Exception):
    """Base class for all etcd-backup errors."""


class ConfigError(BackupError):
    """Missing or invalid configuration (certificates, credentials, CA)."""


class ToolInvocationError(BackupError):
    """An external command (etcdctl, kubectl) failed or reported unhealthy."""

    def __init__(self, message, output=''):
        super().__init__(message)
        self.output = output


class ArchiveError(BackupError, OSError):
    """Creating or reading a snapshot archive failed."""


class NotFoundError(BackupError):
    """No matching snapshot, object or archive member."""


class BucketNotFoundError(NotFoundError):
    """The configured bucket does not exist."""


class UploadError(BackupError):
    """Uploading to the object store failed after all retries."""


class TransferError(BackupError):
    """Fetching a snapshot (object store or peer) failed."""


class ListError(BackupError):
    """Listing objects failed part way through."""


class ParseError(BackupError, ValueError):
    """A snapshot name does not carry a parseable timestamp."""
