import base64

import pytest
from botocore.exceptions import BotoCoreError, ClientError

from etcdbackup import s3
from etcdbackup.config import S3Config
from etcdbackup.errors import BucketNotFoundError, ConfigError, ListError, NotFoundError, TransferError, UploadError


def _client_error(code, op='Op'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, op)


class DummyPaginator:
    def __init__(self, client):
        self.client = client

    def paginate(self, **kwargs):
        self.client.paginate_calls.append(kwargs)
        for page in self.client.pages:
            if isinstance(page, Exception):
                raise page
            yield page


class DummyClient:
    def __init__(self):
        self.upload_failures = 0
        self.uploads = []
        self.pages = []
        self.paginate_calls = []
        self.head_object_response = {'ContentLength': 10}
        self.head_object_error = None
        self.head_bucket_error = None
        self.get_object_error = None
        self.get_object_calls = 0
        self.deleted = []

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        if self.upload_failures:
            self.upload_failures -= 1
            raise _client_error('500', 'PutObject')
        self.uploads.append((filename, bucket, key, ExtraArgs))

    def get_object(self, Bucket, Key):
        self.get_object_calls += 1
        if self.get_object_error:
            raise self.get_object_error
        return {'Body': None}

    def get_paginator(self, name):
        assert name == 'list_objects_v2'
        return DummyPaginator(self)

    def head_object(self, Bucket, Key):
        if self.head_object_error:
            raise self.head_object_error
        return self.head_object_response

    def head_bucket(self, Bucket):
        if self.head_bucket_error:
            raise self.head_bucket_error

    def get_bucket_versioning(self, Bucket):
        return {'Status': 'Enabled'}

    def delete_object(self, Bucket, Key):
        if Key == 'broken':
            raise _client_error('AccessDenied', 'DeleteObject')
        self.deleted.append(Key)


def _gateway(client=None, retries=3):
    return s3.S3Gateway(client or DummyClient(), 'snapshots', retries=retries)


def test_put_retries_then_succeeds(tmp_path):
    f = tmp_path / 'snap.zip'
    f.write_bytes(b'data')
    client = DummyClient()
    client.upload_failures = 2

    _gateway(client).put('folder/snap.zip', str(f), 'application/zip')

    assert client.uploads == [(str(f), 'snapshots', 'folder/snap.zip', {'ContentType': 'application/zip'})]


def test_put_gives_up_after_all_attempts(tmp_path):
    f = tmp_path / 'snap.zip'
    f.write_bytes(b'data')
    client = DummyClient()
    client.upload_failures = 10

    with pytest.raises(UploadError):
        _gateway(client, retries=3).put('snap.zip', str(f), 'application/zip')
    assert client.upload_failures == 6


def test_get_missing_object_raises_not_found():
    client = DummyClient()
    client.get_object_error = _client_error('NoSuchKey', 'GetObject')
    with pytest.raises(NotFoundError):
        _gateway(client).get('missing.zip')


def test_get_gives_up_after_all_attempts():
    client = DummyClient()
    client.get_object_error = _client_error('500', 'GetObject')
    with pytest.raises(TransferError):
        _gateway(client, retries=2).get('folder/snap.zip')
    assert client.get_object_calls == 3


def test_list_uses_delimiter_unless_recursive():
    client = DummyClient()
    client.pages = [{'Contents': [{'Key': 'a'}, {'Key': 'b'}]}, {'Contents': [{'Key': 'c'}]}, {}]
    gw = _gateway(client)

    assert list(gw.list(prefix='folder/snap')) == ['a', 'b', 'c']
    assert client.paginate_calls[-1] == {'Bucket': 'snapshots', 'Prefix': 'folder/snap', 'Delimiter': '/'}

    list(gw.list(prefix='folder', recursive=True))
    assert client.paginate_calls[-1] == {'Bucket': 'snapshots', 'Prefix': 'folder'}


def test_list_surfaces_errors_to_the_consumer():
    client = DummyClient()
    client.pages = [{'Contents': [{'Key': 'a'}]}, _client_error('InternalError', 'ListObjectsV2')]
    seen = []
    with pytest.raises(ListError):
        for key in _gateway(client).list():
            seen.append(key)
    assert seen == ['a']


def test_exists_checks_object_size():
    client = DummyClient()
    gw = _gateway(client)
    assert gw.exists('snap.zip') is True

    client.head_object_response = {'ContentLength': 0}
    assert gw.exists('snap.zip') is False

    client.head_object_error = _client_error('403', 'HeadObject')
    assert gw.exists('snap.zip') is False


def test_versioning_and_remove():
    client = DummyClient()
    gw = _gateway(client)
    assert gw.versioning_enabled() is True
    assert gw.remove('old.zip') is True
    assert gw.remove('broken') is False
    assert client.deleted == ['old.zip']


def test_decode_credential():
    assert s3.decode_credential(base64.b64encode(b'AKIAEXAMPLE').decode()) == 'AKIAEXAMPLE'
    assert s3.decode_credential('not base64!') == 'not base64!'
    assert s3.decode_credential('') == ''


def test_bucket_lookup_type():
    assert s3.bucket_lookup_type('oss-cn-hangzhou.aliyuncs.com') == 'virtual'
    assert s3.bucket_lookup_type('s3.amazonaws.com') == 'auto'
    assert s3.bucket_lookup_type('') == 'auto'


def test_endpoint_url():
    assert s3.endpoint_url('minio:9000') == 'https://minio:9000'
    assert s3.endpoint_url('http://minio:9000') == 'http://minio:9000'
    assert s3.endpoint_url('') is None


def test_connect_passes_decoded_credentials_and_endpoint():
    calls = []
    client = DummyClient()

    def factory(service, **kwargs):
        calls.append((service, kwargs))
        return client

    cfg = S3Config(
        enabled=True,
        endpoint='minio:9000',
        access_key=base64.b64encode(b'access').decode(),
        secret_key='plain-secret!',
        bucket='snapshots',
        region='us-east-1',
    )
    gw = s3.S3Gateway.connect(cfg, retries=1, client_factory=factory)

    assert gw.client is client
    service, kwargs = calls[0]
    assert service == 's3'
    assert kwargs['aws_access_key_id'] == 'access'
    assert kwargs['aws_secret_access_key'] == 'plain-secret!'
    assert kwargs['endpoint_url'] == 'https://minio:9000'
    assert kwargs['region_name'] == 'us-east-1'
    assert 'verify' not in kwargs


def test_connect_without_keys_uses_default_endpoint():
    calls = []

    def factory(service, **kwargs):
        calls.append(kwargs)
        return DummyClient()

    s3.S3Gateway.connect(S3Config(enabled=True, bucket='snapshots'), client_factory=factory)
    assert calls[0]['endpoint_url'] == 'https://s3.amazonaws.com'
    assert 'aws_access_key_id' not in calls[0]


def test_connect_missing_bucket():
    client = DummyClient()
    client.head_bucket_error = _client_error('404', 'HeadBucket')
    with pytest.raises(BucketNotFoundError):
        s3.S3Gateway.connect(S3Config(enabled=True, bucket='nope'), client_factory=lambda *a, **k: client)


def test_connect_rejects_invalid_ca():
    cfg = S3Config(enabled=True, bucket='snapshots', endpoint_ca=base64.b64encode(b'not a certificate').decode())
    with pytest.raises(ConfigError):
        s3.S3Gateway.connect(cfg, client_factory=lambda *a, **k: DummyClient())


def test_connect_with_unreadable_ca_path():
    cfg = S3Config(enabled=True, bucket='snapshots', endpoint_ca='/nonexistent/ca.pem')
    with pytest.raises(ConfigError):
        s3.S3Gateway.connect(cfg, client_factory=lambda *a, **k: DummyClient())


def test_connect_retries_client_construction_then_fails():
    calls = []

    def factory(service, **kwargs):
        calls.append(service)
        raise BotoCoreError()

    with pytest.raises(ConfigError):
        s3.S3Gateway.connect(S3Config(enabled=True, bucket='snapshots'), retries=2, client_factory=factory)
    assert calls == ['s3', 's3', 's3']
