import os
import stat

import pytest

import ipbeacon
from ipbeacon import AddressFileStore, Family


def test_read_returns_sentinel_without_file(tmp_path):
    store = AddressFileStore()
    assert store.read(str(tmp_path), Family.IPV4) == '0.0.0.0'
    assert store.read(str(tmp_path), Family.IPV6) == '::'


def test_write_then_read(tmp_path):
    store = AddressFileStore()
    store.write(str(tmp_path), Family.IPV4, '203.0.113.7')

    assert (tmp_path / 'IPv4.txt').read_text(encoding='utf-8') == '203.0.113.7\n'
    assert store.read(str(tmp_path), Family.IPV4) == '203.0.113.7'
    assert not (tmp_path / 'IPv6.txt').exists()


def test_write_overwrites_whole_file(tmp_path):
    store = AddressFileStore()
    store.write(str(tmp_path), Family.IPV6, '2001:db8:0:0:0:0:0:1234')
    store.write(str(tmp_path), Family.IPV6, '2001:db8::1')

    assert (tmp_path / 'IPv6.txt').read_text(encoding='utf-8') == '2001:db8::1\n'
    assert sorted(os.listdir(tmp_path)) == ['IPv6.txt']


def test_read_keeps_text_verbatim(tmp_path):
    (tmp_path / 'IPv4.txt').write_bytes(b' 198.51.100.4\r\n')
    assert AddressFileStore().read(str(tmp_path), Family.IPV4) == ' 198.51.100.4'


def test_directory_exists(tmp_path):
    store = AddressFileStore()
    (tmp_path / 'file').write_text('x')

    assert store.directory_exists(str(tmp_path))
    assert not store.directory_exists(str(tmp_path / 'missing'))
    assert not store.directory_exists(str(tmp_path / 'file'))


@pytest.fixture
def umask_022():
    previous = os.umask(0o022)
    yield
    os.umask(previous)


@pytest.mark.skipif(os.name == 'nt', reason='POSIX permission bits')
def test_write_keeps_existing_mode(tmp_path, umask_022):
    record = tmp_path / 'IPv4.txt'
    record.write_text('1.2.3.4\n', encoding='utf-8')
    os.chmod(record, 0o644)

    AddressFileStore().write(str(tmp_path), Family.IPV4, '5.6.7.8')

    assert stat.S_IMODE(os.stat(record).st_mode) == 0o644


@pytest.mark.skipif(os.name == 'nt', reason='POSIX permission bits')
def test_new_record_follows_umask(tmp_path, umask_022):
    AddressFileStore().write(str(tmp_path), Family.IPV6, '2001:db8::1')

    assert stat.S_IMODE(os.stat(tmp_path / 'IPv6.txt').st_mode) == 0o644


def test_failed_replace_leaves_record_and_no_temp_file(tmp_path, monkeypatch):
    record = tmp_path / 'IPv4.txt'
    record.write_bytes(b'1.2.3.4\n')

    def replace(source, destination):
        raise OSError(28, 'No space left on device')

    monkeypatch.setattr(ipbeacon.os, 'replace', replace)
    with pytest.raises(OSError, match='No space left'):
        AddressFileStore().write(str(tmp_path), Family.IPV4, '5.6.7.8')

    assert os.listdir(tmp_path) == ['IPv4.txt']
    assert record.read_bytes() == b'1.2.3.4\n'
