"""User preferences stored in ~/.ssh-manager/config.json."""

import copy
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

CONFIG_FILE = 'config.json'

DEFAULTS: Dict[str, Any] = {
    'ssh': {
        'directory': '~/.ssh',
        'default_key_type': 'ed25519',
        'default_key_size': None,
    },
    'clipboard': {
        'timeout': 5.0,
        'auto_install': False,
    },
    'keygen': {
        'timeout': 30.0,
    },
    'install': {
        'timeout': 120.0,
    },
    'ui': {
        'verbose': False,
    },
}


def default_config_dir() -> Path:
    return Path.home() / '.ssh-manager'


def merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides on top of defaults (new dict)."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def parse_value(raw: str) -> Any:
    """Interpret a command-line value as JSON, falling back to a plain string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


class Config:
    """Preferences merged over DEFAULTS. Unknown keys are kept as-is.

    Example:
        config = Config.load()
        config.set('ssh.default_key_type', 'rsa')
        config.save()
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None,
                 config_dir: Optional[Path] = None):
        self.config_dir = config_dir or default_config_dir()
        self.data = merge(DEFAULTS, data or {})

    @property
    def path(self) -> Path:
        return self.config_dir / CONFIG_FILE

    @property
    def activity_log_path(self) -> Path:
        return self.config_dir / 'activity.log'

    @classmethod
    def load(cls, config_dir: Optional[Path] = None) -> 'Config':
        """Load config.json from config_dir. Missing file gives defaults."""
        config_dir = config_dir or default_config_dir()
        config_file = config_dir / CONFIG_FILE
        if not config_file.exists():
            return cls(config_dir=config_dir)

        try:
            data = json.loads(config_file.read_text(encoding='utf-8'))
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Invalid {config_file}: expected a JSON object")
        return cls(data, config_dir=config_dir)

    def save(self) -> Path:
        """Persist to config.json (directory 0700, file 0600 on POSIX)."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self.data, indent=2) + '\n', encoding='utf-8')
        if sys.platform != 'win32':
            os.chmod(self.config_dir, 0o700)
            os.chmod(self.path, 0o600)
        return self.path

    def get(self, dotted: str, default: Any = None) -> Any:
        current: Any = self.data
        for key in dotted.split('.'):
            if not isinstance(current, dict) or key not in current:
                return default
            current = current[key]
        return current

    def set(self, dotted: str, value: Any) -> None:
        keys = dotted.split('.')
        current = self.data
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def reset(self) -> None:
        self.data = copy.deepcopy(DEFAULTS)

    @property
    def ssh_directory(self) -> Path:
        return Path(str(self.get('ssh.directory', '~/.ssh'))).expanduser()

    @property
    def default_key_type(self) -> str:
        return self.get('ssh.default_key_type', 'ed25519')

    @property
    def default_key_size(self) -> Optional[int]:
        return self.get('ssh.default_key_size')

    @property
    def clipboard_timeout(self) -> float:
        return float(self.get('clipboard.timeout', 5.0))

    @property
    def keygen_timeout(self) -> float:
        return float(self.get('keygen.timeout', 30.0))

    @property
    def install_timeout(self) -> float:
        return float(self.get('install.timeout', 120.0))

    @property
    def auto_install(self) -> bool:
        return bool(self.get('clipboard.auto_install', False))

    @property
    def verbose(self) -> bool:
        return bool(self.get('ui.verbose', False))

    def validate(self) -> List[str]:
        """Problems with the current values (empty list when valid)."""
        from sshmanager.keystore import KEY_SIZES

        errors = []
        directory = str(self.get('ssh.directory', ''))
        if not (directory.startswith('~') or Path(directory).is_absolute()):
            errors.append('ssh.directory must be an absolute path or start with ~')

        key_type = self.default_key_type
        if key_type not in KEY_SIZES:
            errors.append(f'Invalid ssh.default_key_type: {key_type}')
        else:
            size = self.default_key_size
            if size is not None and size not in KEY_SIZES[key_type]:
                errors.append(f'Invalid ssh.default_key_size for {key_type}: {size}')

        for dotted in ('clipboard.timeout', 'keygen.timeout', 'install.timeout'):
            value = self.get(dotted)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                errors.append(f'{dotted} must be a positive number of seconds')
        return errors
