"""SSH key pair storage backed by ssh-keygen and a key directory."""

import getpass
import os
import re
import shutil
import socket
import stat
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Set

from sshmanager.activity import ActivityLog, NULL_LOG
from sshmanager.errors import (
    AlreadyExistsError,
    ExternalToolFailure,
    KeyPermissionError,
    NotFoundError,
    ValidationError,
)

PUBLIC_SUFFIX = '.pub'

KEY_SIZES = {
    'rsa': (2048, 3072, 4096),
    'ecdsa': (256, 384, 521),
    'ed25519': (256,),
}
DEFAULT_SIZES = {'rsa': 4096, 'ecdsa': 256, 'ed25519': None}
SUPPORTED_TYPES = tuple(KEY_SIZES)

KEY_TYPE_PREFIXES = (
    ('ssh-rsa', 'rsa'),
    ('ssh-ed25519', 'ed25519'),
    ('ecdsa-sha2-', 'ecdsa'),
    ('ssh-dss', 'dsa'),
)

INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
RESERVED_NAMES = {
    'con', 'prn', 'aux', 'nul',
    *(f'com{i}' for i in range(1, 10)),
    *(f'lpt{i}' for i in range(1, 10)),
}

PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644
DIRECTORY_MODE = 0o700

DEFAULT_KEYGEN_TIMEOUT = 30.0
FINGERPRINT_TIMEOUT = 10.0


def is_posix() -> bool:
    return sys.platform != 'win32'


def detect_key_type(public_key: str) -> str:
    """Key type from the first token of an OpenSSH public key line."""
    token = public_key.strip().split(maxsplit=1)[0] if public_key.strip() else ''
    for prefix, key_type in KEY_TYPE_PREFIXES:
        if token.startswith(prefix):
            return key_type
    return 'unknown'


def default_comment() -> str:
    """user@hostname, as ssh-keygen would write it."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = 'user'
    return f'{user}@{socket.gethostname()}'


def validate_name(name: str) -> None:
    """Raise ValidationError unless name is usable as a key file name."""
    if not name or not isinstance(name, str):
        raise ValidationError('Key name is required')
    if len(name) > 255:
        raise ValidationError('Key name must be between 1 and 255 characters')
    if INVALID_NAME_CHARS.search(name):
        raise ValidationError(f'Key name contains invalid characters: {name!r}')
    if name.lower() in RESERVED_NAMES:
        raise ValidationError(f'Key name is a reserved system name: {name}')
    if name.startswith('.') or name.endswith('.'):
        raise ValidationError('Key name cannot start or end with a dot')


def _is_key_name(name: str) -> bool:
    try:
        validate_name(name)
    except ValidationError:
        return False
    return True


def validate_key_parameters(key_type: str, size: Optional[int]) -> Optional[int]:
    """Check key type and size, returning the size to pass to ssh-keygen.

    ed25519 keys have a fixed size, so only None or 256 is accepted and None
    is returned.
    """
    if key_type not in KEY_SIZES:
        raise ValidationError(
            f"Unsupported key type: {key_type}. Supported: {', '.join(SUPPORTED_TYPES)}"
        )
    if size is None:
        return DEFAULT_SIZES[key_type]
    if size not in KEY_SIZES[key_type]:
        allowed = ', '.join(str(s) for s in KEY_SIZES[key_type])
        raise ValidationError(f'Invalid {key_type} key size: {size}. Supported: {allowed}')
    return None if key_type == 'ed25519' else size


def validate_comment(comment: str) -> None:
    if len(comment) > 1024:
        raise ValidationError('Comment must be less than 1024 characters')


def validate_passphrase(passphrase: str) -> None:
    # ssh-keygen refuses passphrases shorter than five characters
    if passphrase and len(passphrase) < 5:
        raise ValidationError('Passphrase must be empty or at least 5 characters')
    if len(passphrase) > 1024:
        raise ValidationError('Passphrase must be less than 1024 characters')


@dataclass
class KeyPairRecord:
    """A key pair as found on disk."""
    name: str
    private_key_path: Path
    public_key_path: Path
    exists: bool                   # False when only the .pub file remains
    type: str                      # rsa | ed25519 | ecdsa | dsa | unknown
    size: int                      # bytes of the public key file
    created_at: datetime
    modified_at: datetime
    fingerprint: Optional[str] = None
    bits: Optional[int] = None

    @property
    def complete(self) -> bool:
        """Both files exist and, on POSIX, carry 0600/0644 permissions."""
        if not (self.exists and self.public_key_path.exists()):
            return False
        if not is_posix():
            return True
        private_mode = stat.S_IMODE(self.private_key_path.stat().st_mode)
        public_mode = stat.S_IMODE(self.public_key_path.stat().st_mode)
        return private_mode == PRIVATE_MODE and public_mode == PUBLIC_MODE


@dataclass
class DeleteResult:
    name: str
    deleted_parts: Set[str] = field(default_factory=set)


class KeyStore:
    """Creates, lists and deletes key pairs in one directory."""

    def __init__(self, directory: Path, keygen_timeout: float = DEFAULT_KEYGEN_TIMEOUT,
                 log: ActivityLog = NULL_LOG):
        self.directory = Path(directory).expanduser()
        self.keygen_timeout = keygen_timeout
        self.log = log

    def private_path(self, name: str) -> Path:
        return self.directory / name

    def public_path(self, name: str) -> Path:
        return self.directory / f'{name}{PUBLIC_SUFFIX}'

    @staticmethod
    def has_keygen() -> bool:
        return shutil.which('ssh-keygen') is not None

    def ensure_directory(self) -> None:
        """Create the key directory with 0700 permissions if missing."""
        if self.directory.exists():
            return
        try:
            self.directory.mkdir(parents=True)
            if is_posix():
                os.chmod(self.directory, DIRECTORY_MODE)
        except OSError as e:
            raise KeyPermissionError(f'Failed to create SSH directory {self.directory}: {e}') from e

    def build_keygen_command(self, key_type: str, bits: Optional[int], private_path: Path,
                             comment: str, passphrase: str) -> List[str]:
        """ssh-keygen argument vector; values are never shell-interpolated."""
        cmd = ['ssh-keygen', '-q', '-t', key_type]
        if bits is not None:
            cmd += ['-b', str(bits)]
        cmd += ['-f', str(private_path), '-C', comment, '-N', passphrase]
        return cmd

    def generate(self, key_type: str = 'ed25519', size: Optional[int] = None,
                 name: Optional[str] = None, comment: Optional[str] = None,
                 passphrase: str = '', overwrite: bool = False) -> KeyPairRecord:
        """Generate a key pair with ssh-keygen.

        Args:
            key_type: 'rsa', 'ed25519' or 'ecdsa'
            size: Key size in bits, or None for the type default
            name: File name of the private key (default id_<type>)
            comment: Key comment (default user@hostname)
            passphrase: Private key passphrase, empty for none
            overwrite: Replace an existing key of the same name

        Returns:
            KeyPairRecord with fingerprint ('unknown' if it could not be read)

        Raises:
            ValidationError: Bad parameters; nothing is touched on disk
            AlreadyExistsError: Private key exists and overwrite is False
            ExternalToolFailure: ssh-keygen failed, timed out or is missing
            KeyPermissionError: Key files could not be created, moved or chmodded
        """
        name = name or f'id_{key_type}'
        comment = default_comment() if comment is None else comment
        validate_name(name)
        bits = validate_key_parameters(key_type, size)
        validate_comment(comment)
        validate_passphrase(passphrase)

        private_path = self.private_path(name)
        public_path = self.public_path(name)
        if private_path.exists() and not overwrite:
            raise AlreadyExistsError(
                f'Key already exists: {private_path}. Use overwrite to replace.'
            )

        self.ensure_directory()
        self.log.log_event(f'Generating {key_type} key {name} in {self.directory}')
        try:
            # ssh-keygen writes into a staging directory so an existing key
            # survives a failed or interrupted run.
            with tempfile.TemporaryDirectory(prefix='.keygen-', dir=self.directory) as staging:
                staged_private = Path(staging) / name
                staged_public = Path(staging) / f'{name}{PUBLIC_SUFFIX}'
                cmd = self.build_keygen_command(key_type, bits, staged_private, comment, passphrase)
                self._run_keygen(cmd, name)
                if not staged_private.exists() or not staged_public.exists():
                    raise ExternalToolFailure('Key generation failed - files not created')

                if is_posix():
                    os.chmod(staged_private, PRIVATE_MODE)
                    os.chmod(staged_public, PUBLIC_MODE)
                # Leftovers at the target paths (the replaced key or a stray
                # .pub from an interrupted run) are overwritten here.
                os.replace(staged_private, private_path)
                os.replace(staged_public, public_path)
        except OSError as e:
            raise KeyPermissionError(f'Failed to write key files in {self.directory}: {e}') from e

        record = self._record(public_path)
        record.fingerprint = self.fingerprint(public_path)
        record.bits = bits if bits is not None else KEY_SIZES[key_type][0]
        self.log.log_event(f'Generated {key_type} key {name} ({record.fingerprint})')
        return record

    def _run_keygen(self, cmd: List[str], name: str) -> None:
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True,
                timeout=self.keygen_timeout, check=False,
            )
        except subprocess.TimeoutExpired:
            raise ExternalToolFailure(
                f'ssh-keygen timed out after {self.keygen_timeout:g}s'
            ) from None
        except FileNotFoundError:
            raise ExternalToolFailure('ssh-keygen not found. Install OpenSSH.') from None

        if result.returncode != 0:
            self.log.error(f'ssh-keygen failed for {name}: {result.stderr.strip()}')
            raise ExternalToolFailure(
                f'SSH key generation failed: {result.stderr.strip() or result.returncode}'
            )

    def fingerprint(self, public_path: Path) -> str:
        """Fingerprint reported by `ssh-keygen -lf`, or 'unknown'."""
        try:
            result = subprocess.run(
                ['ssh-keygen', '-lf', str(public_path)],
                capture_output=True, text=True,
                timeout=FINGERPRINT_TIMEOUT, check=True,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
            return 'unknown'

        parts = result.stdout.strip().split()
        return parts[1] if len(parts) > 1 else 'unknown'

    def _record(self, public_path: Path) -> KeyPairRecord:
        name = public_path.name[:-len(PUBLIC_SUFFIX)]
        private_path = public_path.with_name(name)
        stats = public_path.stat()
        created = getattr(stats, 'st_birthtime', stats.st_ctime)

        try:
            key_type = detect_key_type(public_path.read_text(encoding='utf-8', errors='replace'))
        except OSError:
            key_type = 'unknown'

        return KeyPairRecord(
            name=name,
            private_key_path=private_path,
            public_key_path=public_path,
            exists=private_path.exists(),
            type=key_type,
            size=stats.st_size,
            created_at=datetime.fromtimestamp(created),
            modified_at=datetime.fromtimestamp(stats.st_mtime),
        )

    def list_keys(self) -> List[KeyPairRecord]:
        """All key pairs in the directory, sorted by name.

        Orphaned public keys are included with exists=False. Files whose
        stem is not a valid key name (e.g. a bare '.pub') are ignored.
        """
        if not self.directory.is_dir():
            return []

        return [
            self._record(path)
            for path in sorted(self.directory.glob(f'*{PUBLIC_SUFFIX}'))
            if path.is_file() and _is_key_name(path.name[:-len(PUBLIC_SUFFIX)])
        ]

    def get(self, name: str) -> KeyPairRecord:
        validate_name(name)
        public_path = self.public_path(name)
        if not public_path.is_file():
            raise NotFoundError(f'Key not found: {name}')
        return self._record(public_path)

    def delete(self, name: str) -> DeleteResult:
        """Remove whichever files of the pair exist.

        Raises:
            NotFoundError: Neither file existed
        """
        validate_name(name)
        result = DeleteResult(name=name)
        for part, path in (('private', self.private_path(name)), ('public', self.public_path(name))):
            if path.exists():
                try:
                    path.unlink()
                except OSError as e:
                    raise KeyPermissionError(f'Failed to delete {path}: {e}') from e
                result.deleted_parts.add(part)

        if not result.deleted_parts:
            raise NotFoundError(f'Key not found: {name}')
        self.log.log_event(f"Deleted {' and '.join(sorted(result.deleted_parts))} key {name}")
        return result

    @staticmethod
    def get_public_key(path: Path) -> str:
        """Read a public key file, trimmed.

        Raises:
            NotFoundError: File does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise NotFoundError(f'Public key not found: {path}')
        return path.read_text(encoding='utf-8').strip()
