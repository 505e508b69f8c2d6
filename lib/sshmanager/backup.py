"""Backup and restore of key pairs."""

import json
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sshmanager.activity import ActivityLog, NULL_LOG
from sshmanager.errors import NotFoundError, ValidationError
from sshmanager.keystore import KeyStore, PRIVATE_MODE, PUBLIC_MODE, is_posix, validate_name

MANIFEST = 'manifest.json'
BACKUP_PREFIX = 'ssh-backup-'
ARCHIVE_SUFFIX = '.tar.gz'


@dataclass
class BackupResult:
    path: Path
    keys_backed_up: int
    total_keys: int
    compressed: bool
    log: List[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    keys_restored: int
    total_keys: int
    dry_run: bool
    log: List[str] = field(default_factory=list)


@dataclass
class BackupInfo:
    name: str
    path: Path
    modified_at: datetime
    size: int
    is_compressed: bool
    manifest: Optional[Dict[str, Any]] = None


def _copy(src: Path, dst: Path, mode: int) -> None:
    shutil.copy2(src, dst)
    if is_posix():
        os.chmod(dst, mode)


def create_backup(store: KeyStore, destination: Path, include_private: bool = True,
                  compress: bool = True, log: ActivityLog = NULL_LOG) -> BackupResult:
    """Copy every key pair into a timestamped backup with a manifest.

    Args:
        store: Key store to back up
        destination: Directory that receives the backup
        include_private: Also copy private keys
        compress: Pack the backup into a .tar.gz and remove the directory

    Returns:
        BackupResult pointing at the backup directory or archive

    Raises:
        NotFoundError: The store has no keys
    """
    keys = store.list_keys()
    if not keys:
        raise NotFoundError('No SSH keys found to backup')

    timestamp = datetime.now().strftime('%Y%m%d-%H%M%S-%f')
    backup_dir = Path(destination).expanduser() / f'{BACKUP_PREFIX}{timestamp}'
    backup_dir.mkdir(parents=True)
    if is_posix():
        os.chmod(backup_dir, 0o700)

    lines = []
    backed_up = 0
    for key in keys:
        try:
            _copy(key.public_key_path, backup_dir / key.public_key_path.name, PUBLIC_MODE)
            lines.append(f'✓ Public key: {key.public_key_path.name}')
            if include_private and key.exists:
                _copy(key.private_key_path, backup_dir / key.name, PRIVATE_MODE)
                lines.append(f'✓ Private key: {key.name}')
            backed_up += 1
        except OSError as e:
            lines.append(f'✗ Failed to backup {key.name}: {e}')

    manifest = {
        'created': datetime.now().isoformat(timespec='seconds'),
        'source': str(store.directory),
        'keys': [
            {
                'name': key.name,
                'type': key.type,
                'public_key_exists': True,
                'private_key_exists': key.exists and include_private,
            }
            for key in keys
        ],
        'options': {'include_private': include_private, 'compress': compress},
    }
    (backup_dir / MANIFEST).write_text(json.dumps(manifest, indent=2), encoding='utf-8')

    final_path = backup_dir
    if compress:
        final_path = backup_dir.with_name(backup_dir.name + ARCHIVE_SUFFIX)
        with tarfile.open(final_path, 'w:gz') as tar:
            tar.add(backup_dir, arcname=backup_dir.name)
        shutil.rmtree(backup_dir)
        if is_posix():
            os.chmod(final_path, PRIVATE_MODE)

    log.log_event(f'Backed up {backed_up} of {len(keys)} key(s) to {final_path}')
    return BackupResult(
        path=final_path,
        keys_backed_up=backed_up,
        total_keys=len(keys),
        compressed=compress,
        log=lines,
    )


def _extract(archive: Path, target: Path) -> Path:
    """Extract a backup archive into target and return the backup directory."""
    with tarfile.open(archive, 'r:gz') as tar:
        root = target.resolve()
        for member in tar.getmembers():
            member_path = (root / member.name).resolve()
            if root not in member_path.parents and member_path != root:
                raise ValidationError(f'Unsafe path in backup archive: {member.name}')
            if member.issym() or member.islnk():
                raise ValidationError(f'Links are not allowed in backups: {member.name}')
        if hasattr(tarfile, 'data_filter'):
            tar.extractall(target, filter='data')
        else:
            tar.extractall(target)

    manifests = sorted(target.glob(f'*/{MANIFEST}')) or sorted(target.glob(MANIFEST))
    if not manifests:
        raise ValidationError('Invalid backup: manifest.json not found')
    return manifests[0].parent


def _load_manifest(backup_dir: Path) -> Dict[str, Any]:
    manifest_path = backup_dir / MANIFEST
    if not manifest_path.exists():
        raise ValidationError('Invalid backup: manifest.json not found')
    try:
        manifest = json.loads(manifest_path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise ValidationError(f'Invalid backup manifest: {e}') from e
    if not isinstance(manifest, dict) or not isinstance(manifest.get('keys'), list):
        raise ValidationError('Invalid backup manifest: missing key list')
    return manifest


def _restore_from(store: KeyStore, backup_dir: Path, overwrite: bool,
                  restore_private: bool, dry_run: bool) -> RestoreResult:
    manifest = _load_manifest(backup_dir)
    if not dry_run:
        store.ensure_directory()

    lines = []
    restored = 0
    for entry in manifest['keys']:
        name = entry.get('name', '')
        try:
            validate_name(name)
        except ValidationError:
            lines.append(f'⚠ Skipped invalid key name in manifest: {name!r}')
            continue
        public_src = backup_dir / f'{name}.pub'
        private_src = backup_dir / name
        has_public = public_src.is_file()
        has_private = private_src.is_file() and restore_private

        if not (has_public or has_private):
            lines.append(f'⚠ No backup files found for {name}')
            continue

        public_dst = store.public_path(name)
        private_dst = store.private_path(name)
        if (public_dst.exists() or private_dst.exists()) and not overwrite:
            lines.append(f'⚠ Skipped {name} (already exists, use --overwrite to replace)')
            continue

        if dry_run:
            lines.append(f'✓ Would restore: {name} (public: {has_public}, private: {has_private})')
            restored += 1
            continue

        try:
            if has_public:
                _copy(public_src, public_dst, PUBLIC_MODE)
                lines.append(f'✓ Restored public key: {name}.pub')
            if has_private:
                _copy(private_src, private_dst, PRIVATE_MODE)
                lines.append(f'✓ Restored private key: {name}')
            restored += 1
        except OSError as e:
            lines.append(f'✗ Failed to restore {name}: {e}')

    return RestoreResult(
        keys_restored=restored,
        total_keys=len(manifest['keys']),
        dry_run=dry_run,
        log=lines,
    )


def restore_backup(store: KeyStore, path: Path, overwrite: bool = False,
                   restore_private: bool = True, dry_run: bool = False,
                   log: ActivityLog = NULL_LOG) -> RestoreResult:
    """Restore key pairs from a backup directory or .tar.gz archive.

    Existing keys are skipped unless overwrite is set.

    Raises:
        NotFoundError: path does not exist
        ValidationError: Not a valid backup
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise NotFoundError(f'Backup not found: {path}')

    if path.is_dir():
        result = _restore_from(store, path, overwrite, restore_private, dry_run)
    else:
        with tempfile.TemporaryDirectory() as tmpdir:
            backup_dir = _extract(path, Path(tmpdir))
            result = _restore_from(store, backup_dir, overwrite, restore_private, dry_run)

    action = 'Analyzed' if dry_run else 'Restored'
    log.log_event(f'{action} {result.keys_restored} of {result.total_keys} key(s) from {path}')
    return result


def list_backups(directory: Path) -> List[BackupInfo]:
    """Backups found in directory, newest first."""
    directory = Path(directory).expanduser()
    if not directory.is_dir():
        return []

    backups = []
    for item in directory.iterdir():
        manifest = None
        if item.is_dir():
            try:
                manifest = _load_manifest(item)
            except ValidationError:
                continue
        elif not item.name.endswith(ARCHIVE_SUFFIX):
            continue

        stats = item.stat()
        backups.append(BackupInfo(
            name=item.name,
            path=item,
            modified_at=datetime.fromtimestamp(stats.st_mtime),
            size=stats.st_size,
            is_compressed=not item.is_dir(),
            manifest=manifest,
        ))

    return sorted(backups, key=lambda b: b.modified_at, reverse=True)


def backup_in_place(store: KeyStore, name: str) -> List[Path]:
    """Copy an existing key pair next to itself with a .backup.<timestamp> suffix."""
    suffix = '.backup.' + datetime.now().strftime('%Y%m%d-%H%M%S')
    copies = []
    for path, mode in ((store.private_path(name), PRIVATE_MODE),
                       (store.public_path(name), PUBLIC_MODE)):
        if path.exists():
            target = path.with_name(path.name + suffix)
            _copy(path, target, mode)
            copies.append(target)
    return copies
