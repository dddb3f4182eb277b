"""
HTTPS endpoint that lets peer nodes pull one snapshot.

The server requires a client certificate signed by the cluster CA and serves
exactly one path, `/<name>`. It runs until the process is stopped.
"""
import os
import ssl

from flask import Flask, abort, send_file

from etcdbackup.archive import extract_member
from etcdbackup.config import SERVER_PORT
from etcdbackup.errors import NotFoundError
from etcdbackup.names import compressed_name
from etcdbackup import utils
from etcdbackup.utils import get_logger

logger = get_logger(__name__)


def prepare_snapshot(name, backup_dir=utils.BACKUP_BASE_DIR):
    """Make sure the raw snapshot `<backup_dir>/<name>` exists, unpacking its archive if needed.

    Raises:
        NotFoundError: neither the archive nor the raw snapshot exists
        ArchiveError: the archive cannot be unpacked
    """
    name = os.path.basename(name)
    raw_path = os.path.join(backup_dir, name)
    archive_path = os.path.join(backup_dir, compressed_name(name))

    if os.path.isfile(archive_path):
        logger.info("[Serve] Decompressing backup: archive=%s", archive_path)
        extract_member(archive_path, raw_path, raw_path)

    if not os.path.isfile(raw_path):
        raise NotFoundError(f"backup file [{raw_path}] does not exist")
    return raw_path


def create_app(name, path):
    """Flask app serving the file at `path` under `/<name>` and nothing else."""
    app = Flask(__name__)
    route = f"/{name}"

    @app.route(route, methods=['GET', 'HEAD'])
    def snapshot():
        if not os.path.isfile(path):
            abort(404)
        return send_file(
            path,
            mimetype='application/octet-stream',
            as_attachment=True,
            download_name=name,
            conditional=True,
        )

    return app


def build_server_ssl_context(certs):
    """TLS 1.2+ server context requiring client certificates signed by the cluster CA."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.verify_mode = ssl.CERT_REQUIRED
    ctx.load_verify_locations(cafile=certs.cacert)
    ctx.load_cert_chain(certfile=certs.cert, keyfile=certs.key)
    return ctx


def serve_backup(name, certs, backup_dir=utils.BACKUP_BASE_DIR, host='0.0.0.0', port=SERVER_PORT):
    """Serve snapshot `name` over mutual TLS. Blocks for the lifetime of the process."""
    path = prepare_snapshot(name, backup_dir)
    app = create_app(os.path.basename(name), path)
    ctx = build_server_ssl_context(certs)
    logger.info("[Serve] Serving backup file [%s] on %s:%d", path, host, port)
    app.run(host=host, port=port, ssl_context=ctx, threaded=True, use_reloader=False)
