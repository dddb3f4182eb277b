"""
Retrieval of snapshots: from the object store, from a peer node, and the
cluster state file out of a local archive. Also removal of a named snapshot.
"""
import os
import ssl

import requests
from requests.adapters import HTTPAdapter

from etcdbackup.archive import extract_member
from etcdbackup.config import SERVER_PORT
from etcdbackup.errors import NotFoundError, TransferError
from etcdbackup.names import compressed_name, decompressed_name, is_compressed, resolve_ambiguous_prefix
from etcdbackup import utils
from etcdbackup.utils import get_logger

logger = get_logger(__name__)

_CHUNK_SIZE = 1024 * 1024
PEER_TIMEOUT = (30, 300)


def download_s3_backup(gateway, name, folder='', backup_dir=utils.BACKUP_BASE_DIR):
    """Fetch snapshot `name` from the bucket into `backup_dir`.

    The object is found by listing `<folder>/<name>` and picking the key that
    matches `name` with or without the archive extension. Archives are
    unpacked so the raw snapshot is available as `<backup_dir>/<name>`.

    Returns:
        Path of the raw snapshot

    Raises:
        NotFoundError: no object matches `name`
        ListError, TransferError: the object store failed
        ArchiveError: the downloaded archive cannot be unpacked
    """
    prefix = f"{folder}/{name}" if folder else name
    logger.info("[Download] Invoking downloading backup files: name=%s prefix=%s", name, prefix)

    key = resolve_ambiguous_prefix(gateway.list(prefix=prefix), prefix)
    filename = os.path.basename(key)
    local_path = os.path.join(backup_dir, filename)
    gateway.download(key, local_path)

    if not is_compressed(filename):
        return local_path

    raw_path = os.path.join(backup_dir, decompressed_name(filename))
    extract_member(local_path, raw_path, raw_path)
    logger.info("[Download] Decompressed backup: archive=%s path=%s", local_path, raw_path)
    return raw_path


class PeerTLSAdapter(HTTPAdapter):
    """HTTPAdapter that uses a prepared SSLContext and skips hostname matching.

    Peers are addressed by IP and their certificates are checked against the
    cluster CA only.
    """

    def __init__(self, ssl_context, **kwargs):
        self._ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs['ssl_context'] = self._ssl_context
        kwargs['assert_hostname'] = False
        return super().init_poolmanager(*args, **kwargs)


def build_client_ssl_context(certs):
    ctx = ssl.create_default_context(cafile=certs.cacert)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_REQUIRED
    ctx.load_cert_chain(certfile=certs.cert, keyfile=certs.key)
    return ctx


def peer_session(certs):
    """requests.Session presenting the client certificate and trusting the peer CA."""
    session = requests.Session()
    session.mount('https://', PeerTLSAdapter(build_client_ssl_context(certs)))
    session.verify = certs.cacert
    session.cert = (certs.cert, certs.key)
    return session


def download_local_backup(name, endpoint, certs, backup_dir=utils.BACKUP_BASE_DIR,
                          port=SERVER_PORT, session=None):
    """Pull snapshot `name` from the peer at `endpoint` into `<backup_dir>/<name>`.

    Raises:
        TransferError: the request failed or the peer did not answer 200
    """
    url = f"https://{endpoint}:{port}/{name}"
    destination = os.path.join(backup_dir, os.path.basename(name))
    logger.info("[Download] Invoking downloading backup file from peer: url=%s", url)

    own_session = session is None
    if own_session:
        session = peer_session(certs)
    try:
        try:
            with session.get(url, stream=True, timeout=PEER_TIMEOUT) as resp:
                if resp.status_code != 200:
                    raise TransferError(f"backup download failed: {url} returned {resp.status_code}")
                with open(destination, 'wb') as fh:
                    for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
        except requests.RequestException as e:
            raise TransferError(f"backup download failed: {url}: {e}") from e
        except OSError as e:
            raise TransferError(f"Failed to write backup file [{destination}]: {e}") from e
    finally:
        if own_session:
            session.close()

    utils.harden_permissions(destination, logger, 'locally downloaded snapshot')
    logger.info("[Download] Successfully downloaded backup: name=%s path=%s", name, destination)
    return destination


def extract_state_file(name, backup_dir=utils.BACKUP_BASE_DIR, state_dir=utils.K8S_BASE_DIR,
                       destination=utils.TMP_STATE_FILE_PATH):
    """Copy the state file bundled in `<backup_dir>/<name>.zip` to `destination`.

    Raises:
        NotFoundError: no such archive, or it holds no state file
        ArchiveError: the archive cannot be read
    """
    if is_compressed(name):
        name = decompressed_name(name)
    archive_path = os.path.join(backup_dir, compressed_name(os.path.basename(name)))
    if not os.path.isfile(archive_path):
        raise NotFoundError(f"compressed backup [{archive_path}] does not exist")

    member = os.path.join(state_dir, f"{os.path.basename(name)}.rkestate")
    logger.info("[Download] Extracting state file: archive=%s member=%s destination=%s", archive_path, member, destination)
    extract_member(archive_path, member, destination)
    return destination


def delete_backup(name, backup_dir=utils.BACKUP_BASE_DIR, cleanup_only=False, gateway=None, folder=''):
    """Remove snapshot `name` from the local directory and, with a gateway, the bucket.

    In cleanup mode only the raw snapshot is removed, and only when its
    archive exists; nothing remote is touched.

    Returns:
        List of removed paths and object keys

    Raises:
        OSError: a local file exists but cannot be removed
    """
    name = os.path.basename(name)
    raw_path = os.path.join(backup_dir, name)
    archive_path = os.path.join(backup_dir, compressed_name(name))
    removed = []

    if cleanup_only:
        if os.path.exists(archive_path) and utils.remove_file(raw_path):
            logger.info("[Backup] Removed uncompressed snapshot: path=%s", raw_path)
            removed.append(raw_path)
        return removed

    for path in (raw_path, archive_path):
        if utils.remove_file(path):
            logger.info("[Backup] Removed local snapshot: path=%s", path)
            removed.append(path)

    if gateway is not None:
        prefix = f"{folder}/{name}" if folder else name
        for key in gateway.list(prefix=prefix):
            if gateway.remove(key):
                logger.info("[S3] Removed backup from s3: key=%s", key)
                removed.append(key)
    return removed
