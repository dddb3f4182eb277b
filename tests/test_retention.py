import os
import time
from datetime import datetime, timedelta, timezone

from etcdbackup import retention
from etcdbackup.errors import ListError

TICK = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _touch(d, name, age=None):
    p = d / name
    p.write_text('x')
    if age is not None:
        ts = time.time() - age.total_seconds()
        os.utime(p, (ts, ts))
    return p


def test_local_retention_deletes_only_strictly_older(tmp_path):
    _touch(tmp_path, '2024-05-01T10:00:00Z_etcd.zip')
    _touch(tmp_path, '2024-05-01T11:00:00Z_etcd.zip')
    _touch(tmp_path, '2024-05-01T11:30:00Z_etcd')
    _touch(tmp_path, 'notes.txt')
    (tmp_path / 'subdir').mkdir()

    result = retention.delete_local_backups(str(tmp_path), TICK, timedelta(hours=1))

    assert result.deleted == ['2024-05-01T10:00:00Z_etcd.zip']
    assert result.ok
    remaining = sorted(os.listdir(tmp_path))
    assert remaining == ['2024-05-01T11:00:00Z_etcd.zip', '2024-05-01T11:30:00Z_etcd', 'notes.txt', 'subdir']
    assert 'notes.txt' in result.skipped
    assert 'subdir' in result.skipped


def test_local_retention_skips_non_rfc3339_names(tmp_path):
    _touch(tmp_path, '20240501T100000Z_etcd.zip')
    _touch(tmp_path, '2024-05-01T10:00Z_etcd.zip')
    _touch(tmp_path, '2024-05-01T10Z_etcd')

    result = retention.delete_local_backups(str(tmp_path), TICK, timedelta(hours=1))

    assert result.deleted == []
    assert sorted(result.skipped) == ['2024-05-01T10:00Z_etcd.zip', '2024-05-01T10Z_etcd', '20240501T100000Z_etcd.zip']
    assert len(os.listdir(tmp_path)) == 3


def test_local_retention_with_missing_directory_is_a_noop(tmp_path):
    result = retention.delete_local_backups(str(tmp_path / 'missing'), TICK, timedelta(hours=1))
    assert result.deleted == []


def test_named_retention_only_touches_old_recurring_snapshots_with_prefix(tmp_path):
    old = timedelta(hours=2)
    _touch(tmp_path, 'c-abc-rl-old.zip', old)
    _touch(tmp_path, 'c-abc-ml-old.zip', old)
    _touch(tmp_path, 'c-abc-rl-new.zip', timedelta(minutes=5))
    _touch(tmp_path, 'c-def-rl-old.zip', old)

    result = retention.delete_named_backups(str(tmp_path), timedelta(hours=1), 'c-abc-')

    assert result.deleted == ['c-abc-rl-old.zip']
    assert sorted(os.listdir(tmp_path)) == ['c-abc-ml-old.zip', 'c-abc-rl-new.zip', 'c-def-rl-old.zip']


def test_named_retention_keeps_manual_backups(tmp_path):
    _touch(tmp_path, 'c-xyz-backup0.zip', timedelta(days=3))
    _touch(tmp_path, 'c-xyz-backup1.zip')

    result = retention.delete_named_backups(str(tmp_path), timedelta(hours=24), 'c-xyz-')

    assert result.deleted == []
    assert len(os.listdir(tmp_path)) == 2


class DummyGateway:
    def __init__(self, keys, fail_after=None, failing_removes=()):
        self.keys = keys
        self.fail_after = fail_after
        self.failing_removes = set(failing_removes)
        self.list_calls = []
        self.removed = []

    def list(self, prefix='', recursive=False):
        self.list_calls.append((prefix, recursive))
        for i, key in enumerate(self.keys):
            if self.fail_after is not None and i == self.fail_after:
                raise ListError('connection reset')
            yield key

    def remove(self, key):
        if key in self.failing_removes:
            return False
        self.removed.append(key)
        return True


def test_s3_retention_with_folder(tmp_path):
    gw = DummyGateway([
        'folder/2024-05-01T10:00:00Z_etcd.zip',
        'folder/2024-05-01T11:30:00Z_etcd.zip',
        'folder/notes.txt',
        'folder/garbageT_etcd.zip',
    ])

    result = retention.delete_s3_backups(gw, 'folder', TICK, timedelta(hours=1))

    assert gw.list_calls == [('folder', True)]
    assert gw.removed == ['folder/2024-05-01T10:00:00Z_etcd.zip']
    assert result.deleted == ['folder/2024-05-01T10:00:00Z_etcd.zip']
    assert result.skipped == ['folder/garbageT_etcd.zip']


def test_s3_retention_without_folder_lists_bucket_root():
    gw = DummyGateway(['2024-04-29T12:00:00Z_etcd.zip', '2024-05-01T12:00:00Z_etcd.zip'])
    result = retention.delete_s3_backups(gw, '', TICK, timedelta(hours=24))
    assert gw.list_calls == [('', False)]
    assert result.deleted == ['2024-04-29T12:00:00Z_etcd.zip']


def test_s3_retention_deletes_nothing_when_listing_fails():
    gw = DummyGateway(['2024-04-01T00:00:00Z_etcd.zip', '2024-04-02T00:00:00Z_etcd.zip'], fail_after=1)
    result = retention.delete_s3_backups(gw, '', TICK, timedelta(hours=1))
    assert gw.removed == []
    assert not result.ok


def test_s3_retention_continues_after_failed_remove():
    gw = DummyGateway(
        ['2024-04-01T00:00:00Z_etcd.zip', '2024-04-02T00:00:00Z_etcd.zip'],
        failing_removes=['2024-04-01T00:00:00Z_etcd.zip'],
    )
    result = retention.delete_s3_backups(gw, '', TICK, timedelta(hours=1))
    assert gw.removed == ['2024-04-02T00:00:00Z_etcd.zip']
    assert [name for name, _ in result.failed] == ['2024-04-01T00:00:00Z_etcd.zip']
