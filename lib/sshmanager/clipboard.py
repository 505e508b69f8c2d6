"""Clipboard access through platform-specific external programs.

Candidate methods are resolved fresh for every operation from the host's
PlatformProfile, probed on PATH, and tried strictly in order. The first
method that succeeds wins; if none does, the caller gets the text back for
manual copying.
"""

import json
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from sshmanager.activity import ActivityLog, NULL_LOG
from sshmanager.errors import ExternalToolFailure, ValidationError
from sshmanager.keystore import detect_key_type
from sshmanager.platform_info import PlatformProfile

DEFAULT_TIMEOUT = 5.0

SSH_KEY_PATTERNS = [
    re.compile(r'^ssh-rsa\s+[A-Za-z0-9+/]+=*(\s+.*)?$'),
    re.compile(r'^ssh-ed25519\s+[A-Za-z0-9+/]+=*(\s+.*)?$'),
    re.compile(r'^ecdsa-sha2-\w+\s+[A-Za-z0-9+/]+=*(\s+.*)?$'),
    re.compile(r'^ssh-dss\s+[A-Za-z0-9+/]+=*(\s+.*)?$'),
]


class ClipboardMethod(Enum):
    """External programs/integrations that can reach the clipboard."""
    PBCOPY = 'pbcopy'
    XCLIP = 'xclip'
    XSEL = 'xsel'
    WL_COPY = 'wl-copy'
    TERMUX = 'termux-clipboard-set'
    POWERSHELL = 'powershell-clipboard'
    CLIP = 'clip'
    WSL = 'wsl-clipboard'
    KDE = 'kde-clipboard'
    GNOME = 'gnome-clipboard'


def _powershell_set(text: str) -> List[str]:
    escaped = text.replace("'", "''")
    return ['powershell', '-NoProfile', '-Command', f"Set-Clipboard -Value '{escaped}'"]


def _kde_set(text: str) -> List[str]:
    return ['qdbus', 'org.kde.klipper', '/klipper', 'setClipboardContents', text]


def _gnome_set(text: str) -> List[str]:
    # json.dumps yields a valid JavaScript string literal
    script = f'St.Clipboard.get_default().set_text(St.ClipboardType.CLIPBOARD, {json.dumps(text)})'
    return [
        'gdbus', 'call', '--session',
        '--dest', 'org.gnome.Shell',
        '--object-path', '/org/gnome/Shell',
        '--method', 'org.gnome.Shell.Eval',
        script,
    ]


@dataclass(frozen=True)
class MethodSpec:
    """How to drive one ClipboardMethod.

    Pipe methods have `pipe_argv` and receive the text on stdin; the others
    build their command line from the text with `build_argv`.
    """
    probe: str
    pipe_argv: Optional[List[str]] = None
    build_argv: Optional[Callable[[str], List[str]]] = None
    read_argv: Optional[List[str]] = None


METHOD_SPECS: Dict[ClipboardMethod, MethodSpec] = {
    ClipboardMethod.PBCOPY: MethodSpec(
        probe='pbcopy', pipe_argv=['pbcopy'], read_argv=['pbpaste']),
    ClipboardMethod.XCLIP: MethodSpec(
        probe='xclip',
        pipe_argv=['xclip', '-selection', 'clipboard'],
        read_argv=['xclip', '-selection', 'clipboard', '-o']),
    ClipboardMethod.XSEL: MethodSpec(
        probe='xsel',
        pipe_argv=['xsel', '--clipboard', '--input'],
        read_argv=['xsel', '--clipboard', '--output']),
    ClipboardMethod.WL_COPY: MethodSpec(
        probe='wl-copy', pipe_argv=['wl-copy'], read_argv=['wl-paste', '--no-newline']),
    ClipboardMethod.TERMUX: MethodSpec(
        probe='termux-clipboard-set',
        pipe_argv=['termux-clipboard-set'],
        read_argv=['termux-clipboard-get']),
    ClipboardMethod.POWERSHELL: MethodSpec(
        probe='powershell',
        build_argv=_powershell_set,
        read_argv=['powershell', '-NoProfile', '-Command', 'Get-Clipboard']),
    ClipboardMethod.CLIP: MethodSpec(
        probe='clip',
        pipe_argv=['clip'],
        read_argv=['powershell', '-NoProfile', '-Command', 'Get-Clipboard']),
    ClipboardMethod.WSL: MethodSpec(
        probe='clip.exe',
        pipe_argv=['clip.exe'],
        read_argv=['powershell.exe', '-NoProfile', '-Command', 'Get-Clipboard']),
    ClipboardMethod.KDE: MethodSpec(
        probe='qdbus',
        build_argv=_kde_set,
        read_argv=['qdbus', 'org.kde.klipper', '/klipper', 'getClipboardContents']),
    ClipboardMethod.GNOME: MethodSpec(probe='gdbus', build_argv=_gnome_set),
}

LINUX_GENERIC = [
    ClipboardMethod.XCLIP,
    ClipboardMethod.XSEL,
    ClipboardMethod.WL_COPY,
    ClipboardMethod.TERMUX,
    ClipboardMethod.PBCOPY,
]


def is_available(method: ClipboardMethod) -> bool:
    """Check the method's executable is on PATH without running it."""
    return shutil.which(METHOD_SPECS[method].probe) is not None


def _available(methods: List[ClipboardMethod]) -> List[ClipboardMethod]:
    return [m for m in methods if is_available(m)]


def _resolve_linux(profile: PlatformProfile) -> List[ClipboardMethod]:
    # Under WSL the Windows clipboard is authoritative
    if profile.is_wsl:
        return _available([ClipboardMethod.WSL])

    methods = _available(LINUX_GENERIC)
    desktop = (profile.desktop_environment or '').lower()
    if 'kde' in desktop:
        methods += _available([ClipboardMethod.KDE])
    if 'gnome' in desktop:
        methods += _available([ClipboardMethod.GNOME])
    return methods


RESOLVERS: Dict[str, Callable[[PlatformProfile], List[ClipboardMethod]]] = {
    'macos': lambda profile: _available([ClipboardMethod.PBCOPY]),
    'windows': lambda profile: _available([ClipboardMethod.POWERSHELL, ClipboardMethod.CLIP]),
    'linux': _resolve_linux,
}


def resolve_methods(profile: PlatformProfile) -> List[ClipboardMethod]:
    """Ordered clipboard methods usable on this host. Empty if none found."""
    resolver = RESOLVERS.get(profile.os)
    return resolver(profile) if resolver else []


@dataclass
class Attempt:
    """Outcome of running one clipboard method once."""
    method: ClipboardMethod
    ok: bool
    output: str = ''
    error: Optional[str] = None


def _run(method: ClipboardMethod, argv: List[str], timeout: float,
         input_text: Optional[str] = None, capture: bool = False) -> Attempt:
    # Copy helpers such as xclip fork a child that keeps the selection alive,
    # so their stdout/stderr must not be pipes we wait on.
    try:
        result = subprocess.run(
            argv,
            input=input_text,
            stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            encoding='utf-8',
            errors='replace',
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return Attempt(method, False, error=f'{argv[0]} timed out after {timeout:g}s')
    except FileNotFoundError:
        return Attempt(method, False, error=f'{argv[0]} not found')
    except OSError as e:
        return Attempt(method, False, error=f'{argv[0]} failed to start: {e}')

    if result.returncode != 0:
        return Attempt(method, False, error=f'{argv[0]} exited with code {result.returncode}')
    return Attempt(method, True, output=result.stdout or '')


def copy_with(method: ClipboardMethod, text: str, timeout: float = DEFAULT_TIMEOUT) -> Attempt:
    """Copy text using one specific method. Never raises."""
    spec = METHOD_SPECS[method]
    if spec.pipe_argv is not None:
        return _run(method, spec.pipe_argv, timeout, input_text=text)
    return _run(method, spec.build_argv(text), timeout)


def read_with(method: ClipboardMethod, timeout: float = DEFAULT_TIMEOUT) -> Attempt:
    """Read clipboard text using one specific method. Never raises."""
    spec = METHOD_SPECS[method]
    if spec.read_argv is None:
        return Attempt(method, False, error=f'{method.value} cannot read the clipboard')
    attempt = _run(method, spec.read_argv, timeout, capture=True)
    attempt.output = attempt.output.strip()
    return attempt


def is_ssh_key(text: Optional[str]) -> bool:
    """Check if text looks like an OpenSSH public key line."""
    if not text:
        return False
    text = text.strip()
    return any(pattern.match(text) for pattern in SSH_KEY_PATTERNS)


@dataclass
class CopyResult:
    """Result of ClipboardManager.copy.

    `text` is always the original input, so a failed copy can be shown to the
    user for manual copying.
    """
    success: bool
    method: str
    text: str
    errors: List[str] = field(default_factory=list)


@dataclass
class ClipboardStatus:
    has_content: bool
    length: int
    is_ssh_key: bool
    key_type: Optional[str]
    preview: str


class ClipboardManager:
    """Copies text to, and reads it from, the system clipboard."""

    def __init__(self, profile: PlatformProfile, timeout: float = DEFAULT_TIMEOUT,
                 installer=None, log: ActivityLog = NULL_LOG):
        """Initialize clipboard manager.

        Args:
            profile: Host platform profile
            timeout: Seconds to wait for each external program
            installer: Optional PackageInstaller, run once when no method is found
            log: Activity log for attempts and failures
        """
        self.profile = profile
        self.timeout = timeout
        self.installer = installer
        self.log = log

    def methods(self) -> List[ClipboardMethod]:
        return resolve_methods(self.profile)

    def _candidates(self) -> List[ClipboardMethod]:
        methods = self.methods()
        if methods or self.installer is None:
            return methods

        self.log.warn('No clipboard tools found, trying to install them')
        result = self.installer.install_clipboard_tools()
        if not result.success:
            self.log.warn(f'Clipboard tool installation failed: {result.error}')
            return []
        return self.methods()

    def copy(self, text: str) -> CopyResult:
        """Copy text, trying each resolved method in order.

        Raises:
            ValidationError: If text is empty

        Returns:
            CopyResult; on total failure method is 'manual' and success False
        """
        if not text or not isinstance(text, str):
            raise ValidationError('Invalid text provided for clipboard copy')

        errors = []
        for method in self._candidates():
            attempt = copy_with(method, text, self.timeout)
            if attempt.ok:
                self.log.log_event(f'Copied {len(text)} characters using {method.value}')
                return CopyResult(success=True, method=method.value, text=text)
            self.log.warn(f'Clipboard method {method.value} failed: {attempt.error}')
            errors.append(f'{method.value}: {attempt.error}')

        if not errors:
            errors.append('no clipboard tool found')
        self.log.warn('All clipboard methods failed, manual copy required')
        return CopyResult(success=False, method='manual', text=text, errors=errors)

    def read(self, method: Optional[ClipboardMethod] = None) -> str:
        """Read clipboard text (trimmed).

        With an explicit method, failure raises ExternalToolFailure. Without
        one, every resolved method is tried and failure degrades to ''.
        """
        if method is not None:
            attempt = read_with(method, self.timeout)
            if not attempt.ok:
                raise ExternalToolFailure(attempt.error)
            return attempt.output

        for candidate in self.methods():
            attempt = read_with(candidate, self.timeout)
            if attempt.ok:
                return attempt.output
        return ''

    def status(self) -> ClipboardStatus:
        """Summarize current clipboard content for diagnostics.

        Read failures are reported as an empty clipboard.
        """
        content = self.read()
        looks_like_key = is_ssh_key(content)
        return ClipboardStatus(
            has_content=len(content) > 0,
            length=len(content),
            is_ssh_key=looks_like_key,
            key_type=detect_key_type(content) if looks_like_key else None,
            preview=content[:50] + '...' if len(content) > 50 else content,
        )
