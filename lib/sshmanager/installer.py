"""Installation of missing system packages (OpenSSH, clipboard helpers)."""

import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from sshmanager.activity import ActivityLog, NULL_LOG
from sshmanager.platform_info import PlatformProfile

DEFAULT_INSTALL_TIMEOUT = 120.0

CLIPBOARD_PACKAGES = ['xclip', 'xsel']

# Package names of the OpenSSH client per package manager
OPENSSH_PACKAGES = {
    'apt': 'openssh-client',
    'dnf': 'openssh-clients',
    'yum': 'openssh-clients',
    'pacman': 'openssh',
    'zypper': 'openssh',
    'apk': 'openssh-client',
    'brew': 'openssh',
}


def _install_command(manager: str, packages: List[str]) -> List[str]:
    if manager == 'apt':
        return ['sudo', 'apt-get', 'install', '-y', *packages]
    if manager in ('dnf', 'yum', 'zypper'):
        return ['sudo', manager, 'install', '-y', *packages]
    if manager == 'pacman':
        return ['sudo', 'pacman', '-S', '--noconfirm', *packages]
    if manager == 'apk':
        return ['sudo', 'apk', 'add', *packages]
    if manager == 'brew':
        return ['brew', 'install', *packages]
    raise ValueError(f'Unsupported package manager: {manager}')


WINDOWS_OPENSSH_COMMANDS = [
    ['powershell', '-NoProfile', '-Command',
     'Add-WindowsCapability -Online -Name OpenSSH.Client~~~~0.0.1.0'],
    ['winget', 'install', '--id', 'Microsoft.OpenSSH.Beta', '-e'],
    ['choco', 'install', 'openssh', '-y'],
]

MANUAL_INSTRUCTIONS: Dict[str, Dict[str, List[str]]] = {
    'openssh': {
        'windows': [
            'Run PowerShell as Administrator',
            'Run: Add-WindowsCapability -Online -Name OpenSSH.Client~~~~0.0.1.0',
            'Or install Git for Windows: https://git-scm.com/download/win',
        ],
        'macos': [
            'Run: brew install openssh',
            'Or install Xcode Command Line Tools: xcode-select --install',
        ],
        'linux': [
            'Ubuntu/Debian: sudo apt install openssh-client',
            'Fedora/CentOS/RHEL: sudo dnf install openssh-clients',
            'Arch Linux: sudo pacman -S openssh',
        ],
    },
    'clipboard': {
        'windows': ['PowerShell Set-Clipboard or clip.exe ship with Windows'],
        'macos': ['pbcopy ships with macOS'],
        'linux': [
            'Ubuntu/Debian: sudo apt install xclip xsel',
            'Fedora/CentOS/RHEL: sudo dnf install xclip xsel',
            'Arch Linux: sudo pacman -S xclip xsel',
            'Wayland: install wl-clipboard',
        ],
    },
}


@dataclass
class InstallResult:
    success: bool
    command: Optional[List[str]] = None
    error: Optional[str] = None


class PackageInstaller:
    """Runs the host's package manager to install missing tools."""

    def __init__(self, profile: PlatformProfile, timeout: float = DEFAULT_INSTALL_TIMEOUT,
                 log: ActivityLog = NULL_LOG):
        self.profile = profile
        self.timeout = timeout
        self.log = log

    def _managers(self) -> List[str]:
        manager = self.profile.package_manager
        if manager is None:
            return []
        # RHEL-family hosts without dnf still have yum
        if manager == 'dnf':
            return ['dnf', 'yum']
        return [manager]

    def _run_first(self, commands: List[List[str]], verify) -> InstallResult:
        """Run candidate commands in order until one succeeds and verify() holds."""
        if not commands:
            return InstallResult(False, error='No supported package manager found')

        error = None
        for cmd in commands:
            if not shutil.which(cmd[1] if cmd[0] == 'sudo' else cmd[0]):
                error = f'{cmd[0]} not available'
                continue
            self.log.log_event(f"Running: {' '.join(cmd)}")
            try:
                # Inherit the terminal so sudo can prompt for a password
                subprocess.run(cmd, timeout=self.timeout, check=True)
            except subprocess.TimeoutExpired:
                error = f'{cmd[0]} timed out after {self.timeout:g}s'
            except subprocess.CalledProcessError as e:
                error = f"{' '.join(cmd)} exited with code {e.returncode}"
            except OSError as e:
                error = f'{cmd[0]} failed to start: {e}'
            else:
                if verify():
                    self.log.log_event(f"Installed with: {' '.join(cmd)}")
                    return InstallResult(True, command=cmd)
                error = 'Installation finished but the tool is still missing'
            self.log.warn(error)
        return InstallResult(False, error=error)

    def install_clipboard_tools(self) -> InstallResult:
        """Install xclip and xsel on Linux."""
        if not self.profile.is_linux or self.profile.is_wsl:
            return InstallResult(False, error='Clipboard tools are only installed on Linux')
        commands = [_install_command(m, CLIPBOARD_PACKAGES) for m in self._managers()]
        return self._run_first(
            commands, lambda: bool(shutil.which('xclip') or shutil.which('xsel'))
        )

    def install_openssh(self) -> InstallResult:
        """Install the OpenSSH client so ssh-keygen becomes available."""
        if self.profile.is_windows:
            commands = WINDOWS_OPENSSH_COMMANDS
        else:
            commands = [
                _install_command(m, [OPENSSH_PACKAGES[m]])
                for m in self._managers() if m in OPENSSH_PACKAGES
            ]
        return self._run_first(commands, lambda: shutil.which('ssh-keygen') is not None)

    def manual_instructions(self, what: str) -> List[str]:
        """Steps a user can follow by hand ('openssh' or 'clipboard')."""
        return MANUAL_INSTRUCTIONS[what].get(self.profile.os, [])
