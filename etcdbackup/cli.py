"""
Command line entry point: `etcd-backup <command> [options]`.

Every option falls back to an environment variable so the tool can be driven
entirely from the container environment.
"""
import argparse
import os
import sys

from etcdbackup.config import (
    DEFAULT_BACKUP_RETRIES,
    DEFAULT_ENDPOINTS,
    DEFAULT_S3_RETRIES,
    BackupSettings,
    EtcdCerts,
    S3Config,
    env_bool,
    parse_duration,
)
from etcdbackup.downloads import delete_backup, download_local_backup, download_s3_backup, extract_state_file
from etcdbackup.errors import BackupError, ConfigError
from etcdbackup.etcdctl import ClusterStateFetcher, EtcdctlTool
from etcdbackup.executor import SnapshotExecutor
from etcdbackup.s3 import S3Gateway
from etcdbackup.scheduler import run_forever
from etcdbackup.serve import serve_backup
from etcdbackup.utils import setup_logging, get_logger

logger = get_logger(__name__)


def _add_debug(parser):
    parser.add_argument('--debug', action='store_true', default=env_bool('RANCHER_DEBUG'),
                        help='Verbose logging information for debugging purposes')


def _add_cert_args(parser):
    env = EtcdCerts.from_env()
    parser.add_argument('--cacert', default=env.cacert, help='Etcd CA client certificate path')
    parser.add_argument('--cert', default=env.cert, help='Etcd client certificate path')
    parser.add_argument('--key', default=env.key, help='Etcd client key path')


def _add_s3_args(parser, s3_backup_help):
    env = S3Config.from_env()
    parser.add_argument('--s3-backup', action='store_true', default=env.enabled, help=s3_backup_help)
    parser.add_argument('--s3-endpoint', default=env.endpoint, help='Specify s3 endpoint address')
    parser.add_argument('--s3-accessKey', dest='s3_access_key', default=env.access_key,
                        help='Specify s3 access key')
    parser.add_argument('--s3-secretKey', dest='s3_secret_key', default=env.secret_key,
                        help='Specify s3 secret key')
    parser.add_argument('--s3-bucketName', dest='s3_bucket', default=env.bucket,
                        help='Specify s3 bucket name')
    parser.add_argument('--s3-region', default=env.region, help='Specify s3 bucket region')
    parser.add_argument('--s3-endpoint-ca', default=env.endpoint_ca,
                        help='Specify custom CA for S3 endpoint. Can be a file path or a base64 string')
    parser.add_argument('--s3-folder', default=env.folder, help='Specify folder for snapshots')


def build_parser():
    parser = argparse.ArgumentParser(prog='etcd-backup', description='Perform etcd backup tools')
    sub = parser.add_subparsers(dest='command', metavar='command')
    sub.required = True

    save = sub.add_parser('save', help='Take snapshot on all etcd hosts and backup to s3 compatible storage')
    _add_debug(save)
    save.add_argument('--endpoints', default=DEFAULT_ENDPOINTS, help='Etcd endpoints')
    save.add_argument('--name', default='', help='Backup name to take once')
    _add_cert_args(save)
    _add_s3_args(save, 'Backup etcd snapshot to your s3 server')
    save.add_argument('--creation', default='5m', help='Create backups after this time interval')
    save.add_argument('--retention', default='24h', help='Retain backups within this time interval')
    save.add_argument('--once', action='store_true', help='Take backup only once')
    save.add_argument('--backup-retries', type=int, default=DEFAULT_BACKUP_RETRIES,
                      help='Number of times to attempt the backup')
    save.add_argument('--s3-retries', type=int, default=DEFAULT_S3_RETRIES,
                      help='Number of times to attempt the upload to s3')
    save.set_defaults(func=cmd_save)

    delete = sub.add_parser('delete', help='Delete snapshot from etcd hosts or s3 compatible storage')
    _add_debug(delete)
    delete.add_argument('--name', default='', help='snapshot name to delete')
    delete.add_argument('--cleanup', action='store_true', help='delete uncompressed files only')
    _add_s3_args(delete, 'delete snapshot from s3')
    delete.set_defaults(func=cmd_delete)

    download = sub.add_parser(
        'download', help='Download specified snapshot from s3 compatible storage or another local endpoint')
    _add_debug(download)
    download.add_argument('--name', default='', help='Backup name')
    _add_cert_args(download)
    download.add_argument('--local-endpoint', default=os.getenv('LOCAL_ENDPOINT', ''),
                          help='Local backup download endpoint')
    _add_s3_args(download, 'Download etcd snapshot from your s3 server')
    download.set_defaults(func=cmd_download)

    extract = sub.add_parser(
        'extractstatefile', help='Extract statefile for specified snapshot (if it is included in the archive)')
    _add_debug(extract)
    extract.add_argument('--name', default='', help='Backup name')
    _add_s3_args(extract, 'Download etcd snapshot from your s3 server')
    extract.set_defaults(func=cmd_extract_state_file)

    serve = sub.add_parser('serve', help='Provide HTTPS endpoint to pull local snapshot')
    _add_debug(serve)
    serve.add_argument('--name', default='', help='Backup name to serve')
    _add_cert_args(serve)
    serve.set_defaults(func=cmd_serve)

    return parser


def _s3_config(args, enabled=None):
    return S3Config(
        enabled=args.s3_backup if enabled is None else enabled,
        endpoint=args.s3_endpoint,
        access_key=args.s3_access_key,
        secret_key=args.s3_secret_key,
        bucket=args.s3_bucket,
        region=args.s3_region,
        endpoint_ca=args.s3_endpoint_ca,
        folder=args.s3_folder,
    )


def _certs(args):
    return EtcdCerts(cacert=args.cacert, cert=args.cert, key=args.key)


def _require_name(args):
    name = os.path.basename(args.name or '')
    if not name:
        raise ConfigError("snapshot name is required")
    return name


def cmd_save(args):
    creation = parse_duration(args.creation)
    retention = parse_duration(args.retention)
    if not creation or not retention:
        logger.error("[Backup] Creation period and/or retention are not set: creation=%s retention=%s",
                     creation, retention)
        raise ConfigError("Creation period and/or retention are not set")

    try:
        certs = _certs(args).require()
    except ConfigError:
        logger.error("[Backup] Failed to find etcd cert or key paths: cacert=%s cert=%s key=%s",
                     args.cacert, args.cert, args.key)
        raise

    settings = BackupSettings(
        endpoints=args.endpoints,
        backup_retries=args.backup_retries,
        s3_retries=args.s3_retries,
    )
    tool = EtcdctlTool(args.endpoints, certs.cacert, certs.cert, certs.key)
    s3_config = _s3_config(args)

    if args.once:
        name = _require_name(args)
        SnapshotExecutor(settings, tool, s3_config).run_once(name, retention)
        return 0

    logger.info("[Backup] Initializing Rolling Backups: creation=%s retention=%s", creation, retention)
    fetcher = ClusterStateFetcher(settings.state_dir, settings.backup_retries, settings.failure_interval)
    executor = SnapshotExecutor(settings, tool, s3_config, state_fetcher=fetcher)
    run_forever(executor, creation, retention)
    return 0


def _connect(args):
    s3_config = _s3_config(args, enabled=True)
    return S3Gateway.connect(s3_config)


def cmd_delete(args):
    name = _require_name(args)
    gateway = None
    if args.s3_backup and not args.cleanup:
        gateway = _connect(args)
    try:
        delete_backup(name, cleanup_only=args.cleanup, gateway=gateway, folder=args.s3_folder)
    finally:
        if gateway is not None:
            gateway.close()
    return 0


def _download_from_s3(args, name):
    gateway = _connect(args)
    try:
        return download_s3_backup(gateway, name, folder=args.s3_folder)
    finally:
        gateway.close()


def cmd_download(args):
    logger.info("[Download] Initializing Download Backups")
    name = _require_name(args)
    if args.s3_backup:
        _download_from_s3(args, name)
        return 0
    if not args.local_endpoint:
        raise ConfigError("local endpoint is required for downloading from a peer")
    download_local_backup(name, args.local_endpoint, _certs(args).require())
    return 0


def cmd_extract_state_file(args):
    name = _require_name(args)
    logger.info("[Download] Trying to get statefile from backup [%s]", name)
    if args.s3_backup:
        _download_from_s3(args, name)
    extract_state_file(name)
    return 0


def cmd_serve(args):
    name = _require_name(args)
    serve_backup(name, _certs(args).require())
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(debug=args.debug)
    try:
        return args.func(args)
    except (BackupError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
