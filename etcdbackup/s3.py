"""
S3-compatible object store access for snapshot archives.

The gateway wraps one boto3 client bound to one bucket. Connection setup and
transfers use fixed retry counts with no backoff; listing is lazy and
surfaces errors to the consumer; existence checks and deletes are best-effort.
"""
import base64
import binascii
import os
import shutil
import tempfile

import boto3
from boto3.exceptions import Boto3Error
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from cryptography import x509

from etcdbackup.config import DEFAULT_S3_RETRIES
from etcdbackup.errors import (
    BucketNotFoundError,
    ConfigError,
    ListError,
    NotFoundError,
    TransferError,
    UploadError,
)
from etcdbackup.utils import format_bytes, get_logger

logger = get_logger(__name__)

DEFAULT_S3_ENDPOINT = 's3.amazonaws.com'

# Providers that only support virtual-hosted (bucket in host name) addressing
_DNS_LOOKUP_PROVIDERS = ('aliyun',)

_TRANSFER_ERRORS = (BotoCoreError, ClientError, Boto3Error, OSError)
_MISSING_CODES = ('404', 'NoSuchKey', 'NoSuchBucket', 'NotFound')


def decode_credential(value):
    """Base64-decode a credential, falling back to the raw value.

    Un-encoded credentials are still accepted so older deployments keep working.
    """
    if not value:
        return value
    try:
        return base64.b64decode(value, validate=True).decode('utf-8')
    except (binascii.Error, ValueError):
        return value


def read_endpoint_ca(endpoint_ca):
    """Return (pem_bytes, from_file) for a CA given as base64 string or file path."""
    try:
        ca = base64.b64decode(endpoint_ca, validate=True)
        logger.debug("[S3] reading s3-endpoint-ca as a base64 string")
        return ca, False
    except (binascii.Error, ValueError):
        pass
    logger.debug("[S3] reading s3-endpoint-ca from [%s]", endpoint_ca)
    try:
        with open(endpoint_ca, 'rb') as fh:
            return fh.read(), True
    except OSError as e:
        raise ConfigError(f"unable to read s3-endpoint-ca: {e}") from e


def is_valid_certificate(pem):
    try:
        x509.load_pem_x509_certificate(pem)
        return True
    except (ValueError, TypeError):
        return False


def bucket_lookup_type(endpoint):
    """Addressing style for the endpoint: 'virtual' for known DNS-only providers, else 'auto'."""
    if endpoint and any(p in endpoint for p in _DNS_LOOKUP_PROVIDERS):
        return 'virtual'
    return 'auto'


def endpoint_url(endpoint):
    if not endpoint:
        return None
    if '://' in endpoint:
        return endpoint
    return f"https://{endpoint}"


class S3Gateway:
    """One bucket on an S3-compatible object store."""

    def __init__(self, client, bucket, retries=DEFAULT_S3_RETRIES, ca_bundle_tmp=None):
        self.client = client
        self.bucket = bucket
        self.retries = retries
        self._ca_bundle_tmp = ca_bundle_tmp

    @classmethod
    def connect(cls, config, retries=DEFAULT_S3_RETRIES, client_factory=None):
        """Build a client for `config` and verify that its bucket exists.

        Args:
            config: S3Config
            retries: Extra attempts for client construction and transfers
            client_factory: Callable with boto3.client's signature (tests)

        Raises:
            ConfigError: invalid CA, client cannot be built, bucket check failed
            BucketNotFoundError: the bucket does not exist
        """
        client_factory = client_factory or boto3.client
        logger.info("[S3] invoking set s3 service client: %s", config.log_fields())

        verify = None
        ca_bundle_tmp = None
        if config.endpoint_ca:
            ca, from_file = read_endpoint_ca(config.endpoint_ca)
            if not is_valid_certificate(ca):
                raise ConfigError("s3-endpoint-ca is not a valid x509 certificate")
            if from_file:
                verify = config.endpoint_ca
            else:
                ca_bundle_tmp = _write_ca_bundle(ca)
                verify = ca_bundle_tmp

        endpoint = config.endpoint
        kwargs = {
            'config': BotoConfig(
                signature_version='s3v4',
                s3={'addressing_style': bucket_lookup_type(endpoint)},
            ),
        }
        if config.access_key and config.secret_key:
            kwargs['aws_access_key_id'] = decode_credential(config.access_key)
            kwargs['aws_secret_access_key'] = decode_credential(config.secret_key)
        else:
            # No static keys: rely on the default credential chain (IAM role)
            logger.info("[S3] invoking set s3 service client use IAM role")
            endpoint = endpoint or DEFAULT_S3_ENDPOINT
        if endpoint:
            kwargs['endpoint_url'] = endpoint_url(endpoint)
        if config.region:
            kwargs['region_name'] = config.region
        if verify:
            kwargs['verify'] = verify

        client = None
        for attempt in range(retries + 1):
            try:
                client = client_factory('s3', **kwargs)
                break
            except (BotoCoreError, ValueError) as e:
                logger.info("[S3] failed to init s3 client: %s, retried %d times", e, attempt)
                if attempt >= retries:
                    _cleanup_tmp(ca_bundle_tmp)
                    raise ConfigError(f"failed to set s3 server: {e}") from e

        gateway = cls(client, config.bucket, retries=retries, ca_bundle_tmp=ca_bundle_tmp)
        try:
            gateway.check_bucket()
        except Exception:
            gateway.close()
            raise
        return gateway

    def check_bucket(self):
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                raise BucketNotFoundError(f"bucket {self.bucket} is not found") from e
            raise ConfigError(f"failed to check s3 bucket:{self.bucket}, err:{e}") from e
        except BotoCoreError as e:
            raise ConfigError(f"failed to check s3 bucket:{self.bucket}, err:{e}") from e

    def close(self):
        _cleanup_tmp(self._ca_bundle_tmp)
        self._ca_bundle_tmp = None

    def put(self, key, local_path, content_type):
        """Upload `local_path` as `key`.

        Raises:
            UploadError: after `retries + 1` failed attempts
        """
        logger.info("[S3] invoking uploading backup file [%s] to s3", key)
        last_error = None
        for attempt in range(self.retries + 1):
            try:
                self.client.upload_file(local_path, self.bucket, key, ExtraArgs={'ContentType': content_type})
                logger.info("[S3] Successfully uploaded [%s] of size [%s]", key, format_bytes(os.path.getsize(local_path)))
                return
            except _TRANSFER_ERRORS as e:
                last_error = e
                logger.warning("[S3] failed to upload etcd snapshot file: attempt=%d key=%s error=%s", attempt + 1, key, e)
        raise UploadError(f"failed to upload etcd snapshot file: {last_error}")

    def get(self, key):
        """Return a readable byte stream for `key`.

        Raises:
            NotFoundError: the object does not exist
            TransferError: after `retries + 1` failed attempts
        """
        last_error = None
        for attempt in range(self.retries + 1):
            try:
                return self.client.get_object(Bucket=self.bucket, Key=key)['Body']
            except ClientError as e:
                if _error_code(e) in _MISSING_CODES:
                    raise NotFoundError(f"object [{key}] not found") from e
                last_error = e
            except _TRANSFER_ERRORS as e:
                last_error = e
            logger.info("[S3] Failed to download etcd snapshot file [%s]: %s, retried %d times", key, last_error, attempt)
        raise TransferError(f"Unable to download backup file for [{key}]: {last_error}")

    def download(self, key, destination):
        """Stream `key` into `destination` and restrict it to 0600."""
        body = self.get(key)
        try:
            with open(destination, 'wb') as fh:
                shutil.copyfileobj(body, fh)
        except _TRANSFER_ERRORS as e:
            raise TransferError(f"Failed to copy retrieved object to local file [{destination}]: {e}") from e
        finally:
            close = getattr(body, 'close', None)
            if close:
                close()
        try:
            os.chmod(destination, 0o600)
        except OSError as e:
            raise TransferError("changing permission of the locally downloaded snapshot failed") from e
        logger.info("[S3] Successfully downloaded [%s] to [%s]", key, destination)
        return destination

    def list(self, prefix='', recursive=False):
        """Yield object keys under `prefix`.

        Non-recursive listings stop at the next '/' after the prefix.

        Raises:
            ListError: from the generator, when a page cannot be fetched
        """
        kwargs = {'Bucket': self.bucket, 'Prefix': prefix}
        if not recursive:
            kwargs['Delimiter'] = '/'
        paginator = self.client.get_paginator('list_objects_v2')
        try:
            for page in paginator.paginate(**kwargs):
                for obj in page.get('Contents', []):
                    yield obj['Key']
        except (BotoCoreError, ClientError) as e:
            logger.error("[S3] failed to list objects in bucket [%s]: %s", self.bucket, e)
            raise ListError(f"failed to list objects in bucket [{self.bucket}]: {e}") from e

    def exists(self, key):
        """True if a non-empty object `key` exists. Errors count as 'does not exist'."""
        try:
            info = self.client.head_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.debug("[S3] stat of [%s] failed: %s", key, e)
            return False
        return bool(info.get('ContentLength', 0))

    def versioning_enabled(self):
        """Return whether bucket versioning is enabled. Errors propagate."""
        resp = self.client.get_bucket_versioning(Bucket=self.bucket)
        return resp.get('Status') == 'Enabled'

    def remove(self, key):
        """Delete `key`. Errors are logged and reported as False."""
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error("[S3] Error detected during deletion of [%s]: %s", key, e)
            return False


def _error_code(error):
    return str(error.response.get('Error', {}).get('Code', ''))


def _write_ca_bundle(pem):
    fd, path = tempfile.mkstemp(prefix='s3-endpoint-ca-', suffix='.pem')
    with os.fdopen(fd, 'wb') as fh:
        fh.write(pem)
    return path


def _cleanup_tmp(path):
    if path:
        try:
            os.remove(path)
        except OSError:
            pass
