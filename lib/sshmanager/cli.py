#!/usr/bin/env python3
"""ssh-manager CLI - SSH key generation and clipboard helper."""

import functools
import json
import platform
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click

from sshmanager.activity import ActivityLog
from sshmanager.backup import backup_in_place, create_backup, list_backups, restore_backup
from sshmanager.clipboard import ClipboardManager
from sshmanager.config import Config, parse_value
from sshmanager.errors import AlreadyExistsError, NotFoundError, SSHManagerError
from sshmanager.installer import PackageInstaller
from sshmanager.keystore import (
    DIRECTORY_MODE,
    SUPPORTED_TYPES,
    KeyStore,
    is_posix,
    validate_key_parameters,
    validate_name,
)
from sshmanager.platform_info import PlatformProfile, detect
from sshmanager.prompts import resolve_existing_key

RULER = '=' * 60
DEFAULT_BACKUP_DIR = '~/ssh-backup'


@dataclass
class App:
    """Components wired from the user's config for one command."""
    config: Config
    profile: PlatformProfile
    log: ActivityLog
    store: KeyStore
    installer: PackageInstaller

    def clipboard(self, allow_install: bool = False) -> ClipboardManager:
        installer = self.installer if allow_install or self.config.auto_install else None
        return ClipboardManager(
            self.profile,
            timeout=self.config.clipboard_timeout,
            installer=installer,
            log=self.log,
        )


def _load_app() -> App:
    ctx = click.get_current_context()
    verbose = bool((ctx.find_root().obj or {}).get('verbose'))

    try:
        config = Config.load()
    except ValueError as e:
        click.secho(f"❌ {e}", fg='red')
        sys.exit(1)

    log = ActivityLog(config.activity_log_path, echo=verbose or config.verbose)
    profile = detect()
    return App(
        config=config,
        profile=profile,
        log=log,
        store=KeyStore(config.ssh_directory, keygen_timeout=config.keygen_timeout, log=log),
        installer=PackageInstaller(profile, timeout=config.install_timeout, log=log),
    )


def handle_errors(func):
    """Report SSHManagerError as a red message and exit 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SSHManagerError as e:
            click.secho(f"❌ {e}", fg='red')
            sys.exit(1)
    return wrapper


def _show_manual_copy(text: str) -> None:
    click.echo("\n" + RULER)
    click.echo("📋 Copy this public key manually:")
    click.echo(RULER)
    click.echo(text)
    click.echo(RULER + "\n")


def _copy_to_clipboard(app: App, text: str, allow_install: bool = False) -> bool:
    result = app.clipboard(allow_install).copy(text)
    if result.success:
        click.secho(f"✓ Public key copied to clipboard ({result.method})", fg='green')
        return True

    click.secho("⚠️  Could not copy to clipboard automatically", fg='yellow')
    for error in result.errors:
        click.echo(f"   {error}")
    _show_manual_copy(result.text)
    return False


def _ensure_keygen(app: App, install: bool) -> None:
    if app.store.has_keygen():
        return

    click.secho("⚠️  ssh-keygen not found", fg='yellow')
    if install or app.config.auto_install:
        click.echo("Installing OpenSSH client...")
        result = app.installer.install_openssh()
        if result.success:
            click.secho("✓ OpenSSH installed", fg='green')
            return
        click.secho(f"❌ Installation failed: {result.error}", fg='red')

    click.echo("Install OpenSSH manually:")
    for step in app.installer.manual_instructions('openssh'):
        click.echo(f"  • {step}")
    sys.exit(1)


class AliasedGroup(click.Group):
    """Group that also accepts short command aliases."""

    ALIASES = {
        'gen': 'generate',
        'cp': 'copy',
        'ls': 'list',
        'del': 'delete',
        'st': 'status',
    }

    def get_command(self, ctx, cmd_name):
        return super().get_command(ctx, self.ALIASES.get(cmd_name, cmd_name))

    def resolve_command(self, ctx, args):
        _, cmd, args = super().resolve_command(ctx, args)
        return cmd.name if cmd else None, cmd, args


@click.group(cls=AliasedGroup)
@click.version_option(package_name='ssh-manager')
@click.option('--verbose', '-v', is_flag=True, help='Echo activity log events')
@click.pass_context
def main(ctx, verbose):
    """Generate SSH keys and copy them to the clipboard."""
    ctx.ensure_object(dict)['verbose'] = verbose


@main.command()
@click.option('--type', '-t', 'key_type', type=click.Choice(SUPPORTED_TYPES),
              help='Key type (default from config)')
@click.option('--bits', '-b', type=int, help='Key size in bits')
@click.option('--name', '-n', help='Key file name (default id_<type>)')
@click.option('--comment', '-c', help='Key comment (default user@hostname)')
@click.option('--passphrase', default='', help='Private key passphrase (default none)')
@click.option('--force', '-f', is_flag=True, help='Overwrite an existing key without asking')
@click.option('--no-copy', is_flag=True, help='Do not copy the public key to the clipboard')
@click.option('--install', is_flag=True, help='Install missing tools with the package manager')
@handle_errors
def generate(key_type: Optional[str], bits: Optional[int], name: Optional[str],
             comment: Optional[str], passphrase: str, force: bool, no_copy: bool,
             install: bool) -> None:
    """Generate a new SSH key pair and copy the public key."""
    app = _load_app()
    store = app.store

    key_type = key_type or app.config.default_key_type
    if bits is None and key_type == app.config.default_key_type:
        bits = app.config.default_key_size
    name = name or f'id_{key_type}'
    validate_name(name)
    validate_key_parameters(key_type, bits)

    _ensure_keygen(app, install)

    overwrite = force
    if store.private_path(name).exists() and not force:
        decision = resolve_existing_key(store, name)
        if not decision.proceed:
            raise AlreadyExistsError(f"Key already exists: {store.private_path(name)} (cancelled)")
        if decision.new_name:
            name = decision.new_name
        else:
            if decision.backup:
                for copy_path in backup_in_place(store, name):
                    click.echo(f"   Backed up to: {copy_path}")
            overwrite = True

    click.echo(f"🔑 Generating {key_type} key '{name}'...")
    record = store.generate(
        key_type=key_type,
        size=bits,
        name=name,
        comment=comment,
        passphrase=passphrase,
        overwrite=overwrite,
    )

    click.secho("✅ SSH key generated", fg='green')
    click.echo(f"   Type: {key_type.upper()} ({record.bits} bits)")
    click.echo(f"   Private key: {record.private_key_path}")
    click.echo(f"   Public key: {record.public_key_path}")
    click.echo(f"   Fingerprint: {record.fingerprint}")

    public_key = store.get_public_key(record.public_key_path)
    if no_copy:
        _show_manual_copy(public_key)
    else:
        _copy_to_clipboard(app, public_key, allow_install=install)


@main.command('list')
@click.option('--detailed', '-d', is_flag=True, help='Show paths, dates and fingerprints')
@handle_errors
def list_keys(detailed: bool) -> None:
    """List SSH key pairs."""
    app = _load_app()
    keys = app.store.list_keys()
    if not keys:
        click.echo(f"No SSH keys found in {app.store.directory}")
        click.echo("Run 'ssh-manager generate' to create one")
        return

    click.echo(f"🔑 SSH keys in {app.store.directory}:\n")
    for key in keys:
        if key.exists:
            click.secho(f"  ✓ {key.type:<8} {key.name}", fg='green')
        else:
            click.secho(f"  ✗ {key.type:<8} {key.name} (private key missing)", fg='red')

        if detailed:
            click.echo(f"      Public key: {key.public_key_path}")
            if key.exists:
                click.echo(f"      Private key: {key.private_key_path}")
            click.echo(f"      Created: {key.created_at:%Y-%m-%d %H:%M}")
            click.echo(f"      Size: {key.size} bytes")
            click.echo(f"      Fingerprint: {app.store.fingerprint(key.public_key_path)}")
            click.echo("")


@main.command()
@click.option('--name', '-n', help='Key to copy (default: first key)')
@handle_errors
def copy(name: Optional[str]) -> None:
    """Copy a public key to the clipboard."""
    app = _load_app()
    if name:
        record = app.store.get(name)
    else:
        keys = app.store.list_keys()
        if not keys:
            raise NotFoundError(f"No SSH keys found in {app.store.directory}")
        record = keys[0]

    public_key = app.store.get_public_key(record.public_key_path)
    click.echo(f"📋 Copying {record.name}.pub...")
    _copy_to_clipboard(app, public_key)


@main.command()
@click.option('--name', '-n', required=True, help='Key to delete')
@click.option('--force', '-f', is_flag=True, help='Delete without prompting')
@handle_errors
def delete(name: str, force: bool) -> None:
    """Delete an SSH key pair."""
    app = _load_app()
    validate_name(name)
    private_path = app.store.private_path(name)
    public_path = app.store.public_path(name)
    if not (private_path.exists() or public_path.exists()):
        raise NotFoundError(f"Key not found: {name}")

    if not force and not click.confirm(f"Delete key pair '{name}'?", default=False):
        click.echo("Cancelled")
        return

    result = app.store.delete(name)
    for part in sorted(result.deleted_parts):
        path = private_path if part == 'private' else public_path
        click.echo(f"✓ Deleted {part} key: {path}")


@main.command()
@handle_errors
def status() -> None:
    """Show keys, clipboard and system status."""
    app = _load_app()
    store = app.store

    click.secho("🔍 SSH Manager status", bold=True)

    click.echo("\n📁 SSH directory")
    if store.directory.is_dir():
        click.echo(f"  ✓ {store.directory}")
        if is_posix():
            mode = stat.S_IMODE(store.directory.stat().st_mode)
            if mode == DIRECTORY_MODE:
                click.echo("  ✓ Permissions 700")
            else:
                click.secho(f"  ⚠️  Permissions {mode:o} (expected 700)", fg='yellow')
    else:
        click.secho(f"  ✗ {store.directory} does not exist", fg='red')

    keys = store.list_keys()
    click.echo("\n🔑 Keys")
    click.echo(f"  Total: {len(keys)}")
    click.echo(f"  Complete pairs: {sum(1 for key in keys if key.complete)}")
    orphans = [key.name for key in keys if not key.exists]
    if orphans:
        click.secho(f"  Orphaned public keys: {', '.join(orphans)}", fg='yellow')

    clipboard = app.clipboard()
    methods = clipboard.methods()
    click.echo("\n📋 Clipboard")
    if methods:
        clip_status = clipboard.status()
        if clip_status.has_content:
            click.echo(f"  Content: {clip_status.length} characters")
            if clip_status.is_ssh_key:
                click.echo(f"  ✓ Looks like an SSH key ({clip_status.key_type})")
            click.echo(f"  Preview: {clip_status.preview}")
        else:
            click.echo("  Empty")
    else:
        click.secho("  ✗ No clipboard tool available", fg='yellow')

    click.echo("\n💻 System")
    keygen = '✓ available' if store.has_keygen() else '✗ not found'
    click.echo(f"  ssh-keygen: {keygen}")
    click.echo(f"  Platform: {app.profile.describe()}")
    click.echo(f"  Python: {platform.python_version()}")
    names = ', '.join(m.value for m in methods) or 'none'
    click.echo(f"  Clipboard methods: {names}")


@main.command()
@click.option('--yes', '-y', is_flag=True, help='Install without prompting')
@handle_errors
def setup(yes: bool) -> None:
    """Install OpenSSH and clipboard tools if missing."""
    app = _load_app()
    click.echo(f"💻 {app.profile.describe()}")

    if app.store.has_keygen():
        click.echo("✓ ssh-keygen available")
    elif yes or click.confirm("ssh-keygen is missing. Install OpenSSH?", default=True):
        result = app.installer.install_openssh()
        if result.success:
            click.secho("✓ OpenSSH installed", fg='green')
        else:
            click.secho(f"❌ OpenSSH installation failed: {result.error}", fg='red')
            for step in app.installer.manual_instructions('openssh'):
                click.echo(f"  • {step}")

    clipboard = app.clipboard()
    methods = clipboard.methods()
    if methods:
        click.echo(f"✓ Clipboard: {', '.join(m.value for m in methods)}")
    elif app.profile.is_linux and not app.profile.is_wsl and (
            yes or click.confirm("No clipboard tool found. Install xclip/xsel?", default=True)):
        result = app.installer.install_clipboard_tools()
        if result.success:
            click.secho("✓ Clipboard tools installed", fg='green')
        else:
            click.secho(f"❌ Clipboard tool installation failed: {result.error}", fg='red')
            for step in app.installer.manual_instructions('clipboard'):
                click.echo(f"  • {step}")
    else:
        click.secho("⚠️  No clipboard tool available", fg='yellow')
        for step in app.installer.manual_instructions('clipboard'):
            click.echo(f"  • {step}")


@main.group()
def backup():
    """Back up and restore SSH keys."""
    pass


@backup.command('create')
@click.option('--output', '-o', default=DEFAULT_BACKUP_DIR, show_default=True,
              help='Directory that receives the backup')
@click.option('--no-private', is_flag=True, help='Only back up public keys')
@click.option('--no-compress', is_flag=True, help='Keep a plain directory instead of .tar.gz')
@handle_errors
def backup_create(output: str, no_private: bool, no_compress: bool) -> None:
    """Create a backup of all key pairs."""
    app = _load_app()
    result = create_backup(
        app.store,
        Path(output),
        include_private=not no_private,
        compress=not no_compress,
        log=app.log,
    )
    for line in result.log:
        click.echo(f"  {line}")
    click.secho(
        f"✅ Backed up {result.keys_backed_up}/{result.total_keys} key(s) to {result.path}",
        fg='green',
    )


@backup.command('restore')
@click.argument('path', type=click.Path(exists=True))
@click.option('--overwrite', is_flag=True, help='Replace keys that already exist')
@click.option('--no-private', is_flag=True, help='Only restore public keys')
@click.option('--dry-run', is_flag=True, help='Preview without restoring')
@handle_errors
def backup_restore(path: str, overwrite: bool, no_private: bool, dry_run: bool) -> None:
    """Restore key pairs from a backup directory or archive."""
    app = _load_app()
    result = restore_backup(
        app.store,
        Path(path),
        overwrite=overwrite,
        restore_private=not no_private,
        dry_run=dry_run,
        log=app.log,
    )
    for line in result.log:
        click.echo(f"  {line}")
    verb = 'Would restore' if dry_run else 'Restored'
    click.secho(f"✅ {verb} {result.keys_restored}/{result.total_keys} key(s)", fg='green')


@backup.command('list')
@click.option('--dir', '-d', 'directory', default=DEFAULT_BACKUP_DIR, show_default=True,
              help='Directory containing backups')
def backup_list(directory: str) -> None:
    """List available backups."""
    backups = list_backups(Path(directory))
    if not backups:
        click.echo(f"No backups found in {directory}")
        return

    for info in backups:
        kind = 'archive' if info.is_compressed else 'directory'
        keys = f", {len(info.manifest['keys'])} key(s)" if info.manifest else ''
        click.echo(f"  {info.name} ({kind}, {info.modified_at:%Y-%m-%d %H:%M}{keys})")


@main.group('config')
def config_group():
    """Show or change preferences."""
    pass


def _load_config() -> Config:
    try:
        return Config.load()
    except ValueError as e:
        click.secho(f"❌ {e}", fg='red')
        sys.exit(1)


@config_group.command('show')
def config_show() -> None:
    """Print the effective configuration."""
    click.echo(json.dumps(_load_config().data, indent=2))


@config_group.command('get')
@click.argument('key')
def config_get(key: str) -> None:
    """Print one value (dotted key, e.g. ssh.default_key_type)."""
    value = _load_config().get(key)
    if value is None:
        click.secho(f"❌ Unknown or unset key: {key}", fg='red')
        sys.exit(1)
    click.echo(json.dumps(value) if not isinstance(value, str) else value)


@config_group.command('set')
@click.argument('key')
@click.argument('value')
def config_set(key: str, value: str) -> None:
    """Set a value and save (VALUE is parsed as JSON when possible)."""
    config = _load_config()
    config.set(key, parse_value(value))
    errors = config.validate()
    if errors:
        for error in errors:
            click.secho(f"❌ {error}", fg='red')
        sys.exit(1)
    config.save()
    click.echo(f"✓ {key} = {json.dumps(config.get(key))}")


@config_group.command('reset')
@click.option('--force', '-f', is_flag=True, help='Reset without prompting')
def config_reset(force: bool) -> None:
    """Restore default preferences."""
    config = _load_config()
    if not force and not click.confirm("Reset all preferences to defaults?", default=False):
        click.echo("Cancelled")
        return
    config.reset()
    config.save()
    click.echo("✓ Configuration reset")


@config_group.command('path')
def config_path() -> None:
    """Print the config file location."""
    click.echo(str(_load_config().path))


if __name__ == '__main__':
    main()
