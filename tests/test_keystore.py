import os
import shutil
import stat
import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from sshmanager.errors import (
    AlreadyExistsError,
    ExternalToolFailure,
    KeyPermissionError,
    NotFoundError,
    ValidationError,
)
from sshmanager.keystore import (
    KeyStore,
    detect_key_type,
    validate_key_parameters,
    validate_name,
    validate_passphrase,
)

needs_keygen = pytest.mark.skipif(shutil.which('ssh-keygen') is None,
                                  reason='ssh-keygen not installed')
posix_only = pytest.mark.skipif(sys.platform == 'win32', reason='POSIX permissions')


def _mode(path):
    return stat.S_IMODE(path.stat().st_mode)


def test_validate_key_parameters_defaults():
    assert validate_key_parameters('rsa', None) == 4096
    assert validate_key_parameters('ecdsa', None) == 256
    assert validate_key_parameters('ed25519', None) is None
    assert validate_key_parameters('ed25519', 256) is None
    assert validate_key_parameters('ecdsa', 521) == 521


@pytest.mark.parametrize('key_type,size', [
    ('rsa', 1024),
    ('ecdsa', 128),
    ('ed25519', 512),
    ('dsa', None),
])
def test_validate_key_parameters_rejects(key_type, size):
    with pytest.raises(ValidationError):
        validate_key_parameters(key_type, size)


@pytest.mark.parametrize('name', ['', 'a/b', 'key?', 'CON', 'lpt1', '.hidden', 'trailing.', 'x' * 256])
def test_validate_name_rejects(name):
    with pytest.raises(ValidationError):
        validate_name(name)


def test_validate_name_accepts_usual_names():
    for name in ('id_ed25519', 'github-work', 'deploy.key', 'x' * 255):
        validate_name(name)


def test_validate_passphrase():
    validate_passphrase('')
    validate_passphrase('secret')
    with pytest.raises(ValidationError):
        validate_passphrase('abc')
    with pytest.raises(ValidationError):
        validate_passphrase('x' * 1025)


def test_detect_key_type():
    assert detect_key_type('ssh-rsa AAAA comment') == 'rsa'
    assert detect_key_type('ssh-ed25519 AAAA') == 'ed25519'
    assert detect_key_type('ecdsa-sha2-nistp384 AAAA') == 'ecdsa'
    assert detect_key_type('ssh-dss AAAA') == 'dsa'
    assert detect_key_type('garbage') == 'unknown'
    assert detect_key_type('') == 'unknown'


def test_build_keygen_command(tmp_path):
    store = KeyStore(tmp_path)
    cmd = store.build_keygen_command('rsa', 4096, tmp_path / 'id_rsa', 'me@host', '')
    assert cmd == [
        'ssh-keygen', '-q', '-t', 'rsa', '-b', '4096',
        '-f', str(tmp_path / 'id_rsa'), '-C', 'me@host', '-N', '',
    ]
    assert '-b' not in store.build_keygen_command('ed25519', None, tmp_path / 'k', '', '')


def test_generate_invalid_parameters_touch_nothing(tmp_path):
    """Should fail validation before creating any file"""
    ssh_dir = tmp_path / '.ssh'
    store = KeyStore(ssh_dir)
    with patch('sshmanager.keystore.subprocess.run') as mock_run:
        with pytest.raises(ValidationError):
            store.generate('rsa', 1024)
        with pytest.raises(ValidationError):
            store.generate('ed25519', name='bad/name')
    mock_run.assert_not_called()
    assert not ssh_dir.exists()


def test_generate_keygen_failure(tmp_path):
    store = KeyStore(tmp_path)
    failed = subprocess.CompletedProcess([], 1, stdout='', stderr='unknown key type')
    with patch('sshmanager.keystore.subprocess.run', return_value=failed):
        with pytest.raises(ExternalToolFailure, match='unknown key type'):
            store.generate('ed25519', name='k')


def test_generate_keygen_timeout(tmp_path):
    store = KeyStore(tmp_path, keygen_timeout=1)
    with patch('sshmanager.keystore.subprocess.run',
               side_effect=subprocess.TimeoutExpired('ssh-keygen', 1)):
        with pytest.raises(ExternalToolFailure, match='timed out'):
            store.generate('ed25519', name='k')


def test_generate_keygen_missing(tmp_path):
    store = KeyStore(tmp_path)
    with patch('sshmanager.keystore.subprocess.run', side_effect=FileNotFoundError):
        with pytest.raises(ExternalToolFailure, match='not found'):
            store.generate('ed25519', name='k')


def _fake_keygen(public_line):
    """subprocess.run stand-in that writes the key pair ssh-keygen would."""
    def run(cmd, **kwargs):
        if '-lf' in cmd:
            return subprocess.CompletedProcess(cmd, 0, stdout='256 SHA256:fake k (ED25519)\n', stderr='')
        private_path = Path(cmd[cmd.index('-f') + 1])
        private_path.write_text('NEW PRIVATE\n')
        private_path.with_name(private_path.name + '.pub').write_text(public_line + '\n')
        return subprocess.CompletedProcess(cmd, 0, stdout='', stderr='')
    return run


def _make_pair(directory, name):
    (directory / name).write_text('OLD PRIVATE\n')
    (directory / f'{name}.pub').write_text('ssh-ed25519 OLD old@host\n')


@pytest.mark.parametrize('failure', [
    subprocess.CompletedProcess([], 1, stdout='', stderr='boom'),
    subprocess.TimeoutExpired('ssh-keygen', 1),
])
def test_generate_overwrite_failure_keeps_existing_key(tmp_path, failure):
    """A failed overwrite should leave the old key pair in place"""
    _make_pair(tmp_path, 'k')
    store = KeyStore(tmp_path, keygen_timeout=1)
    kwargs = {'side_effect': failure} if isinstance(failure, Exception) else {'return_value': failure}

    with patch('sshmanager.keystore.subprocess.run', **kwargs):
        with pytest.raises(ExternalToolFailure):
            store.generate('ed25519', name='k', overwrite=True)

    assert (tmp_path / 'k').read_text() == 'OLD PRIVATE\n'
    assert (tmp_path / 'k.pub').read_text() == 'ssh-ed25519 OLD old@host\n'
    assert sorted(p.name for p in tmp_path.iterdir()) == ['k', 'k.pub']


def test_generate_overwrite_moves_new_pair_into_place(tmp_path):
    _make_pair(tmp_path, 'k')
    store = KeyStore(tmp_path)

    with patch('sshmanager.keystore.subprocess.run',
               side_effect=_fake_keygen('ssh-ed25519 NEW k@host')):
        record = store.generate('ed25519', name='k', overwrite=True)

    assert record.fingerprint == 'SHA256:fake'
    assert (tmp_path / 'k').read_text() == 'NEW PRIVATE\n'
    assert (tmp_path / 'k.pub').read_text() == 'ssh-ed25519 NEW k@host\n'
    assert sorted(p.name for p in tmp_path.iterdir()) == ['k', 'k.pub']
    if sys.platform != 'win32':
        assert _mode(tmp_path / 'k') == 0o600
        assert _mode(tmp_path / 'k.pub') == 0o644


def test_generate_unwritable_directory_raises_permission_error(tmp_path):
    store = KeyStore(tmp_path)
    with patch('sshmanager.keystore.tempfile.TemporaryDirectory',
               side_effect=PermissionError('denied')):
        with pytest.raises(KeyPermissionError, match='denied'):
            store.generate('ed25519', name='k')


def test_delete_unlink_failure_raises_permission_error(tmp_path):
    _make_pair(tmp_path, 'k')
    with patch.object(Path, 'unlink', side_effect=PermissionError('denied')):
        with pytest.raises(KeyPermissionError, match='denied'):
            KeyStore(tmp_path).delete('k')


@needs_keygen
@posix_only
def test_generate_ed25519(tmp_path):
    """Should create a key pair with 0600/0644 permissions"""
    ssh_dir = tmp_path / '.ssh'
    store = KeyStore(ssh_dir)

    record = store.generate('ed25519', name='id_test', comment='test@example')

    assert record.private_key_path.exists()
    assert record.public_key_path.exists()
    assert record.type == 'ed25519'
    assert record.bits == 256
    assert record.fingerprint.startswith('SHA256:')
    assert record.complete
    assert _mode(record.private_key_path) == 0o600
    assert _mode(record.public_key_path) == 0o644
    assert _mode(ssh_dir) == 0o700
    public_key = store.get_public_key(record.public_key_path)
    assert public_key.startswith('ssh-ed25519 ')
    assert public_key.endswith('test@example')


@needs_keygen
@pytest.mark.parametrize('key_type,size,prefix', [
    ('rsa', 2048, 'ssh-rsa '),
    ('rsa', 3072, 'ssh-rsa '),
    ('rsa', 4096, 'ssh-rsa '),
    ('ecdsa', 256, 'ecdsa-sha2-nistp256 '),
    ('ecdsa', 384, 'ecdsa-sha2-nistp384 '),
    ('ecdsa', 521, 'ecdsa-sha2-nistp521 '),
    ('ed25519', 256, 'ssh-ed25519 '),
])
def test_generate_every_supported_size(tmp_path, key_type, size, prefix):
    store = KeyStore(tmp_path)
    record = store.generate(key_type, size, name=f'{key_type}_{size}')
    assert store.get_public_key(record.public_key_path).startswith(prefix)
    assert record.type == key_type


@needs_keygen
def test_list_after_generating(tmp_path):
    store = KeyStore(tmp_path)
    for name in ('one', 'two', 'three'):
        store.generate('ed25519', name=name)

    keys = store.list_keys()

    assert [k.name for k in keys] == ['one', 'three', 'two']
    assert all(k.exists for k in keys)

    store.delete('two')
    assert [k.name for k in store.list_keys()] == ['one', 'three']


@needs_keygen
def test_generate_with_passphrase(tmp_path):
    """Should encrypt the private key with the passphrase"""
    record = KeyStore(tmp_path).generate('ed25519', name='locked', passphrase='hunter22')

    def unlock(passphrase):
        return subprocess.run(
            ['ssh-keygen', '-y', '-P', passphrase, '-f', str(record.private_key_path)],
            capture_output=True, text=True,
        ).returncode

    assert unlock('') != 0
    assert unlock('hunter22') == 0


@needs_keygen
def test_generate_refuses_existing_key(tmp_path):
    store = KeyStore(tmp_path)
    store.generate('ed25519', name='dup')
    before = store.public_path('dup').read_text()

    with pytest.raises(AlreadyExistsError):
        store.generate('ed25519', name='dup')

    assert store.public_path('dup').read_text() == before


@needs_keygen
def test_generate_overwrite_replaces_key(tmp_path):
    store = KeyStore(tmp_path)
    first = store.generate('ed25519', name='dup')
    second = store.generate('ed25519', name='dup', overwrite=True)
    assert first.fingerprint != second.fingerprint


@needs_keygen
def test_generate_replaces_orphaned_public_key(tmp_path):
    """Should not trip over a leftover .pub from an interrupted run"""
    store = KeyStore(tmp_path)
    store.public_path('left').write_text('garbage')
    record = store.generate('ed25519', name='left')
    assert record.type == 'ed25519'


def test_list_keys_missing_directory(tmp_path):
    assert KeyStore(tmp_path / 'nope').list_keys() == []


def test_list_keys_ignores_files_without_key_name(tmp_path):
    """A bare '.pub' or hidden '.x.pub' file should not break listing"""
    (tmp_path / '.pub').write_text('ssh-ed25519 AAAA\n')
    (tmp_path / '.hidden.pub').write_text('ssh-ed25519 AAAA\n')
    (tmp_path / 'ok.pub').write_text('ssh-ed25519 AAAA ok@host\n')

    keys = KeyStore(tmp_path).list_keys()

    assert [k.name for k in keys] == ['ok']


def test_list_keys_sorted_with_orphans(tmp_path):
    """Should list every .pub file and flag missing private keys"""
    (tmp_path / 'zeta.pub').write_text('ssh-rsa AAAA z@host\n')
    (tmp_path / 'zeta').write_text('private')
    (tmp_path / 'alpha.pub').write_text('ssh-ed25519 AAAA a@host\n')
    (tmp_path / 'known_hosts').write_text('')
    (tmp_path / 'dir.pub').mkdir()

    keys = KeyStore(tmp_path).list_keys()

    assert [k.name for k in keys] == ['alpha', 'zeta']
    assert keys[0].exists is False
    assert keys[0].type == 'ed25519'
    assert keys[1].exists is True
    assert keys[1].type == 'rsa'
    assert keys[1].size == len('ssh-rsa AAAA z@host\n')


@posix_only
def test_complete_requires_permissions(tmp_path):
    (tmp_path / 'k.pub').write_text('ssh-ed25519 AAAA\n')
    (tmp_path / 'k').write_text('private')
    os.chmod(tmp_path / 'k', 0o644)
    os.chmod(tmp_path / 'k.pub', 0o644)
    assert KeyStore(tmp_path).get('k').complete is False

    os.chmod(tmp_path / 'k', 0o600)
    assert KeyStore(tmp_path).get('k').complete is True


def test_get_unknown_key(tmp_path):
    with pytest.raises(NotFoundError):
        KeyStore(tmp_path).get('missing')


def test_delete_both_files(tmp_path):
    (tmp_path / 'k').write_text('private')
    (tmp_path / 'k.pub').write_text('ssh-ed25519 AAAA\n')

    result = KeyStore(tmp_path).delete('k')

    assert result.deleted_parts == {'private', 'public'}
    assert list(tmp_path.iterdir()) == []


def test_delete_orphan_public_key(tmp_path):
    (tmp_path / 'k.pub').write_text('ssh-ed25519 AAAA\n')
    assert KeyStore(tmp_path).delete('k').deleted_parts == {'public'}


def test_delete_missing_key(tmp_path):
    with pytest.raises(NotFoundError):
        KeyStore(tmp_path).delete('k')


def test_get_public_key_missing(tmp_path):
    with pytest.raises(NotFoundError):
        KeyStore.get_public_key(tmp_path / 'none.pub')
