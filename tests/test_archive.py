import os
import zipfile

import pytest

from etcdbackup import archive
from etcdbackup.errors import ArchiveError, NotFoundError


def _snapshot(tmp_path, name='snap', data=b'etcd-snapshot-bytes' * 100):
    d = tmp_path / 'backup'
    d.mkdir(exist_ok=True)
    p = d / name
    p.write_bytes(data)
    return str(p)


def test_compress_then_extract_returns_identical_bytes(tmp_path):
    src = _snapshot(tmp_path)
    original = open(src, 'rb').read()

    archive_path = archive.compress_files(src, [src])
    assert archive_path == src + '.zip'
    assert archive.list_members(archive_path) == [src]

    dest = str(tmp_path / 'restored')
    archive.extract_member(archive_path, src, dest)
    assert open(dest, 'rb').read() == original
    assert os.stat(dest).st_mode & 0o777 == 0o600


def test_archive_bytes_do_not_depend_on_time(tmp_path):
    src = _snapshot(tmp_path)
    first = archive.compress_files(str(tmp_path / 'a'), [src])
    os.utime(src, (1, 1))
    second = archive.compress_files(str(tmp_path / 'b'), [src])
    assert open(first, 'rb').read() == open(second, 'rb').read()


def test_archive_holds_state_file_under_its_full_path(tmp_path):
    src = _snapshot(tmp_path)
    state_dir = tmp_path / 'kubernetes'
    state_dir.mkdir()
    state = state_dir / 'snap.rkestate'
    state.write_text('{"desiredState": {}}')

    archive_path = archive.compress_files(src, [src, str(state)])
    assert archive.list_members(archive_path) == [src, str(state)]

    with zipfile.ZipFile(archive_path) as zf:
        info = zf.getinfo(str(state))
        assert info.date_time == (1980, 1, 1, 0, 0, 0)
        assert info.compress_type == zipfile.ZIP_DEFLATED


def test_extract_missing_member_raises_not_found(tmp_path):
    src = _snapshot(tmp_path)
    archive_path = archive.compress_files(src, [src])
    with pytest.raises(NotFoundError):
        archive.extract_member(archive_path, '/etc/kubernetes/other.rkestate', str(tmp_path / 'out'))
    assert not (tmp_path / 'out').exists()


def test_compress_missing_input_leaves_no_partial_archive(tmp_path):
    base = str(tmp_path / 'missing')
    with pytest.raises(ArchiveError):
        archive.compress_files(base, [base])
    assert not os.path.exists(base + '.zip')


def test_extract_from_corrupt_archive_raises_archive_error(tmp_path):
    bad = tmp_path / 'bad.zip'
    bad.write_bytes(b'not a zip file')
    with pytest.raises(ArchiveError):
        archive.extract_member(str(bad), 'x', str(tmp_path / 'out'))
