"""Interactive prompts for resolving key name collisions."""

from dataclasses import dataclass
from datetime import date
from typing import Optional

import click

from sshmanager.errors import ValidationError
from sshmanager.keystore import KeyStore, validate_name


@dataclass
class ExistingKeyDecision:
    proceed: bool
    backup: bool = False
    new_name: Optional[str] = None


def _suggest_name(store: KeyStore, name: str) -> str:
    base = f'{name}_{date.today().isoformat()}'
    candidate, n = base, 1
    while store.private_path(candidate).exists() or store.public_path(candidate).exists():
        n += 1
        candidate = f'{base}_{n}'
    return candidate


def resolve_existing_key(store: KeyStore, name: str) -> ExistingKeyDecision:
    """Ask the user what to do about an existing key called `name`.

    Args:
        store: Key store holding the key
        name: Name of the colliding key

    Returns:
        ExistingKeyDecision; proceed=False means the user cancelled
    """
    private_path = store.private_path(name)
    public_path = store.public_path(name)

    click.secho(f"\n⚠️  SSH key already exists: {name}", fg='yellow', bold=True)
    if private_path.exists():
        click.echo(f"   Private key: {private_path}")
    if public_path.exists():
        click.echo(f"   Public key: {public_path}")
    click.echo("")

    click.echo("Options:")
    click.echo("  [r] Create new key with a different name")
    click.echo("  [b] Back up existing key and create new")
    click.echo("  [o] Overwrite existing key")
    click.echo("  [x] Cancel")

    choice = click.prompt("Your choice", type=click.Choice(['r', 'b', 'o', 'x']), default='r')

    if choice == 'r':
        def check_name(value: str) -> str:
            value = value.strip()
            try:
                validate_name(value)
            except ValidationError as e:
                raise click.BadParameter(str(e))
            if store.private_path(value).exists() or store.public_path(value).exists():
                raise click.BadParameter('A key with this name already exists')
            return value

        new_name = click.prompt(
            "New key name", default=_suggest_name(store, name), value_proc=check_name
        )
        return ExistingKeyDecision(proceed=True, new_name=new_name)

    if choice == 'b':
        return ExistingKeyDecision(proceed=True, backup=True)

    if choice == 'o':
        confirmed = click.confirm(
            "⚠️  Overwrite the existing key? This cannot be undone.", default=False
        )
        return ExistingKeyDecision(proceed=confirmed)

    return ExistingKeyDecision(proceed=False)
