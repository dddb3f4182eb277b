"""
Zip archive helpers for snapshot files.

An archive holds the raw snapshot and, when present, the cluster state file.
Members are stored under the full path given at creation time so the state
file can later be looked up by its original location.
"""
import os
import shutil
import zipfile

from etcdbackup.errors import ArchiveError, NotFoundError
from etcdbackup.utils import get_logger

logger = get_logger(__name__)

COMPRESSED_EXTENSION = 'zip'
CONTENT_TYPE = 'application/zip'

# Fixed member timestamp (the zip epoch) so identical input gives identical bytes
_FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
_CHUNK_SIZE = 1024 * 1024


def compress_files(destination_base, file_names):
    """Create `<destination_base>.zip` containing every file in `file_names`.

    Args:
        destination_base: Path of the archive without extension
        file_names: Files to add; each is stored under its path as given

    Returns:
        Path of the created archive

    Raises:
        ArchiveError: if a member cannot be read or the archive cannot be written
    """
    archive_path = f"{destination_base}.{COMPRESSED_EXTENSION}"
    try:
        with zipfile.ZipFile(archive_path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
            for file_name in file_names:
                _add_file(zf, file_name)
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        try:
            os.remove(archive_path)
        except OSError:
            pass
        raise ArchiveError(f"failed to create archive {archive_path}: {e}") from e
    return archive_path


def _add_file(zf, file_name):
    st = os.stat(file_name)
    info = zipfile.ZipInfo(filename=file_name, date_time=_FIXED_DATE_TIME)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = (st.st_mode & 0xFFFF) << 16
    with open(file_name, 'rb') as src, zf.open(info, 'w', force_zip64=st.st_size > zipfile.ZIP64_LIMIT) as dst:
        shutil.copyfileobj(src, dst, _CHUNK_SIZE)


def list_members(archive_path):
    """Return the member names of an archive."""
    try:
        with zipfile.ZipFile(archive_path) as zf:
            return zf.namelist()
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveError(f"failed to read archive {archive_path}: {e}") from e


def extract_member(archive_path, member_name, destination_path):
    """Extract the member named exactly `member_name` to `destination_path`.

    The destination is written with 0600 permissions.

    Raises:
        NotFoundError: if the archive has no such member
        ArchiveError: if the archive cannot be read or the destination written
    """
    try:
        with zipfile.ZipFile(archive_path) as zf:
            info = next((i for i in zf.infolist() if i.filename == member_name), None)
            if info is None:
                raise NotFoundError(f"File [{member_name}] not found in file [{archive_path}]")
            with zf.open(info) as src, open(destination_path, 'wb') as dst:
                shutil.copyfileobj(src, dst, _CHUNK_SIZE)
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveError(
            f"Unable to extract file [{member_name}] from file [{archive_path}] "
            f"to destination [{destination_path}]: {e}") from e

    try:
        os.chmod(destination_path, 0o600)
    except OSError as e:
        logger.warning("changing permission of the decompressed file failed: path=%s error=%s", destination_path, e)
