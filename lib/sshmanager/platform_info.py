"""Host platform detection."""

import os
import platform
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

KNOWN_DISTROS = (
    'ubuntu', 'debian', 'fedora', 'centos', 'rhel', 'arch', 'manjaro',
    'opensuse', 'alpine', 'kali', 'mint', 'pop',
)

DISTRO_ALIASES = {
    'linuxmint': 'mint',
    'opensuse-leap': 'opensuse',
    'opensuse-tumbleweed': 'opensuse',
    'sles': 'opensuse',
    'archarm': 'arch',
}

# Checked in order when /etc/os-release is absent
RELEASE_FILES = (
    ('etc/manjaro-release', 'manjaro'),
    ('etc/arch-release', 'arch'),
    ('etc/fedora-release', 'fedora'),
    ('etc/centos-release', 'centos'),
    ('etc/redhat-release', 'rhel'),
    ('etc/alpine-release', 'alpine'),
    ('etc/SuSE-release', 'opensuse'),
    ('etc/debian_version', 'debian'),
)

DISTRO_PACKAGE_MANAGERS = {
    'ubuntu': 'apt', 'debian': 'apt', 'kali': 'apt', 'mint': 'apt', 'pop': 'apt',
    'fedora': 'dnf', 'centos': 'dnf', 'rhel': 'dnf',
    'arch': 'pacman', 'manjaro': 'pacman',
    'opensuse': 'zypper',
    'alpine': 'apk',
}

# Probed on PATH for distros missing from the table above
LINUX_PACKAGE_MANAGERS = (
    ('apt-get', 'apt'), ('dnf', 'dnf'), ('yum', 'yum'),
    ('pacman', 'pacman'), ('zypper', 'zypper'), ('apk', 'apk'),
)


@dataclass(frozen=True)
class PlatformProfile:
    """What kind of host we are running on. Computed once per process."""
    os: str                                   # 'windows' | 'macos' | 'linux'
    distro: Optional[str] = None
    is_wsl: bool = False
    desktop_environment: Optional[str] = None
    package_manager: Optional[str] = None

    @property
    def is_linux(self) -> bool:
        return self.os == 'linux'

    @property
    def is_windows(self) -> bool:
        return self.os == 'windows'

    @property
    def is_macos(self) -> bool:
        return self.os == 'macos'

    def describe(self) -> str:
        """One-line summary for status output."""
        parts = [self.os]
        if self.distro:
            parts.append(self.distro)
        if self.is_wsl:
            parts.append('WSL')
        if self.desktop_environment:
            parts.append(self.desktop_environment)
        return ' / '.join(parts)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding='utf-8', errors='replace')
    except OSError:
        return None


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse KEY=value lines of an os-release file, stripping quotes."""
    fields = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        fields[key.strip()] = value.strip().strip('"\'')
    return fields


def _normalize(distro_id: str) -> str:
    distro_id = distro_id.lower()
    return DISTRO_ALIASES.get(distro_id, distro_id)


def detect_distro(root: Path = Path('/')) -> str:
    """Classify the Linux distribution.

    Matches ID, then each ID_LIKE token, against KNOWN_DISTROS. An unmatched
    ID is returned as-is; anything unreadable gives 'unknown'.
    """
    content = _read_text(root / 'etc' / 'os-release')
    if content is not None:
        fields = parse_os_release(content)
        distro_id = _normalize(fields.get('ID', ''))
        candidates = [distro_id] + [_normalize(t) for t in fields.get('ID_LIKE', '').split()]
        for candidate in candidates:
            if candidate in KNOWN_DISTROS:
                return candidate
        return distro_id or 'unknown'

    for relative, distro in RELEASE_FILES:
        if (root / relative).exists():
            return distro
    return 'unknown'


def detect_wsl(root: Path = Path('/')) -> bool:
    """True when /proc/version names a Microsoft/WSL kernel."""
    content = _read_text(root / 'proc' / 'version')
    if not content:
        return False
    content = content.lower()
    return 'microsoft' in content or 'wsl' in content


def detect_desktop(env: Mapping[str, str]) -> Optional[str]:
    return env.get('XDG_CURRENT_DESKTOP') or env.get('DESKTOP_SESSION') or None


def detect_package_manager(os_name: str, distro: Optional[str]) -> Optional[str]:
    """Pick the package manager used to install missing tools."""
    if os_name == 'macos':
        return 'brew'
    if os_name == 'windows':
        for tool in ('winget', 'choco'):
            if shutil.which(tool):
                return tool
        return None
    if distro in DISTRO_PACKAGE_MANAGERS:
        return DISTRO_PACKAGE_MANAGERS[distro]
    for executable, manager in LINUX_PACKAGE_MANAGERS:
        if shutil.which(executable):
            return manager
    return None


def _os_name(system: str) -> str:
    system = system.lower()
    if system == 'windows':
        return 'windows'
    if system == 'darwin':
        return 'macos'
    return 'linux'


def detect(system: Optional[str] = None, env: Optional[Mapping[str, str]] = None,
           root: Path = Path('/')) -> PlatformProfile:
    """Inspect the host and return its PlatformProfile.

    Never raises. `system`, `env` and `root` exist so tests can fake a host.

    Example:
        >>> detect(system='Darwin').os
        'macos'
    """
    env = os.environ if env is None else env
    os_name = _os_name(system if system is not None else platform.system())

    distro = None
    is_wsl = False
    desktop = None
    if os_name == 'linux':
        distro = detect_distro(root)
        is_wsl = detect_wsl(root)
        desktop = detect_desktop(env)

    return PlatformProfile(
        os=os_name,
        distro=distro,
        is_wsl=is_wsl,
        desktop_environment=desktop,
        package_manager=detect_package_manager(os_name, distro),
    )
