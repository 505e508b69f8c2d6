"""Activity logging."""

import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click


class ActivityLog:
    """Append-only log of what ssh-manager did (activity.log).

    Example:
        log = ActivityLog(Path.home() / '.ssh-manager' / 'activity.log', echo=True)
        log.log_event('Generated key id_ed25519')
    """

    def __init__(self, log_path: Optional[Path], echo: bool = False):
        self.log_path = log_path
        self.echo = echo

    def log_event(self, message: str, level: str = 'INFO') -> None:
        """Log an event to activity.log, and to the terminal when verbose."""
        if self.echo:
            click.secho(f'  {level.lower()}: {message}', dim=True, err=True)
        if self.log_path is None:
            return

        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        entry = f'[{timestamp}] {level}: {message}\n'
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, 'a', encoding='utf-8') as f:
                f.write(entry)
        except (IOError, OSError) as e:
            print(f"Warning: Failed to log event: {e}", file=sys.stderr)

    def warn(self, message: str) -> None:
        self.log_event(message, level='WARN')

    def error(self, message: str) -> None:
        self.log_event(message, level='ERROR')


NULL_LOG = ActivityLog(None)
