"""
Release lookups for ``version --check`` / ``update`` and the periodic
"new version available" notice.

The notice is driven by a small JSON cache in ``~/.claude-vm`` so that at
most one network request is made per ``update_check.interval_hours``.
Nothing here may break a normal command: failures are logged at debug
level and otherwise ignored.
"""

from __future__ import annotations

import json
import os
import re
import sys
import time
import urllib.request
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from . import __version__
from .errors import PermissionDeniedError, UpdateError
from .util import CmdError, run_cmd

log = logger

GITHUB_REPO = 'themouette/claude-vm'
RELEASES_URL = f'https://api.github.com/repos/{GITHUB_REPO}/releases/latest'
REQUEST_TIMEOUT = 10
CI_ENV_VARS = (
    'CI',
    'GITHUB_ACTIONS',
    'GITLAB_CI',
    'CIRCLECI',
    'TRAVIS',
    'JENKINS_HOME',
    'TEAMCITY_VERSION',
    'BUILDKITE',
)

_VERSION_RE = re.compile(r'^\d+(\.\d+)*([-+][0-9A-Za-z.+-]*)?$')


@dataclass
class UpdateCheckCache:
    last_check: int
    latest_version: Optional[str] = None
    update_available: bool = False

    def is_stale(self, interval_hours: int, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        elapsed_hours = max(int(now) - self.last_check, 0) // 3600
        return elapsed_hours >= interval_hours


def cache_path() -> Optional[Path]:
    home = os.environ.get('HOME')
    if not home:
        return None
    return Path(home) / '.claude-vm' / 'update-check.json'


def load_cache() -> Optional[UpdateCheckCache]:
    fpath = cache_path()
    if fpath is None or not fpath.exists():
        return None
    try:
        raw = json.loads(fpath.read_text(encoding='utf-8'))
        return UpdateCheckCache(
            last_check=int(raw['last_check']),
            latest_version=raw.get('latest_version'),
            update_available=bool(raw.get('update_available', False)),
        )
    except (OSError, ValueError, KeyError, TypeError) as ex:
        log.debug('Ignoring unreadable update cache {}: {}', fpath, ex)
        return None


def save_cache(cache: UpdateCheckCache) -> None:
    fpath = cache_path()
    if fpath is None:
        return
    try:
        fpath.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(fpath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as file:
            json.dump(asdict(cache), file, indent=2)
        os.chmod(fpath, 0o600)
    except OSError as ex:
        log.debug('Could not write update cache {}: {}', fpath, ex)


def clear_cache() -> None:
    fpath = cache_path()
    if fpath is not None:
        try:
            fpath.unlink()
        except FileNotFoundError:
            pass


def parse_version(version: str) -> tuple[int, ...]:
    """
    Numeric release components; pre-release suffixes are ignored.

    Example:
        >>> from claude_vm.update_check import parse_version
        >>> parse_version('v1.10.2-rc1')
        (1, 10, 2)
    """
    core = version.strip().lstrip('v')
    core = re.split(r'[-+]', core, maxsplit=1)[0]
    parts = []
    for item in core.split('.'):
        if not item.isdigit():
            break
        parts.append(int(item))
    return tuple(parts)


def is_newer_version(latest: str, current: str = __version__) -> bool:
    """
    Example:
        >>> from claude_vm.update_check import is_newer_version
        >>> is_newer_version('0.10.0', '0.9.9'), is_newer_version('1.0', '1.0.0')
        (True, False)
    """
    a, b = parse_version(latest), parse_version(current)
    width = max(len(a), len(b))
    a += (0,) * (width - len(a))
    b += (0,) * (width - len(b))
    return a > b


def sanitize_version(version: str) -> str:
    """Keep only characters that can appear in a version (no terminal escapes)."""
    return ''.join(c for c in version if c.isalnum() or c in '.-+')


def get_latest_version(timeout: float = REQUEST_TIMEOUT) -> Optional[str]:
    """Latest release tag from GitHub, without a leading ``v``."""
    request = urllib.request.Request(
        RELEASES_URL,
        headers={
            'Accept': 'application/vnd.github+json',
            'User-Agent': f'claude-vm/{__version__}',
        },
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode('utf-8'))
    except (OSError, ValueError) as ex:
        raise UpdateError(f'Failed to query latest release: {ex}')
    tag = str(payload.get('tag_name') or '').strip()
    if not tag:
        return None
    return tag.lstrip('v')


def is_ci_environment(environ: Optional[dict[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return any(name in env for name in CI_ENV_VARS)


def perform_version_check(fetch: Optional[Callable[[], Optional[str]]] = None) -> UpdateCheckCache:
    fetch = fetch or get_latest_version
    latest = fetch()
    if latest is not None and not _VERSION_RE.match(latest):
        log.debug('Ignoring malformed release version {!r}', latest)
        latest = None
    return UpdateCheckCache(
        last_check=int(time.time()),
        latest_version=latest,
        update_available=bool(latest) and is_newer_version(latest),
    )


def format_notification(latest_version: str, current: str = __version__) -> str:
    width = 45
    inner = width - 2
    safe = sanitize_version(latest_version)
    lines = [
        '╭' + '─' * inner + '╮',
        '│' + 'A new version of claude-vm is available!'.center(inner) + '│',
        '├' + '─' * inner + '┤',
        '│  Current: ' + current.ljust(width - 13) + '│',
        '│  Latest:  ' + safe.ljust(width - 13) + '│',
        '├' + '─' * inner + '┤',
        '│  ' + 'Run: claude-vm update'.ljust(width - 4) + '│',
        '╰' + '─' * inner + '╯',
    ]
    return '\n'.join(lines)


def check_and_notify(
    enabled: bool = True,
    interval_hours: int = 72,
    *,
    fetch: Optional[Callable[[], Optional[str]]] = None,
    environ: Optional[dict[str, str]] = None,
    stream=None,
) -> Optional[UpdateCheckCache]:
    """Print the update box to stderr when the (possibly cached) check says so."""
    if not enabled or is_ci_environment(environ):
        return None
    stream = stream or sys.stderr
    try:
        cache = load_cache()
        if cache is None or cache.is_stale(interval_hours):
            cache = perform_version_check(fetch)
            save_cache(cache)
        if cache.update_available and cache.latest_version:
            print('', file=stream)
            print(format_notification(cache.latest_version), file=stream)
            print('', file=stream)
        return cache
    except Exception as ex:
        log.debug('Update check failed: {}', ex)
        return None


def install_version(version: str) -> None:
    """Upgrade the installed distribution in the running interpreter's environment."""
    cmd = [sys.executable, '-m', 'pip', 'install', '--upgrade', f'claude-vm=={version}']
    try:
        run_cmd(cmd, check=True, capture=True)
    except CmdError as ex:
        output = ex.result.stderr + ex.result.stdout
        if 'Permission denied' in output or 'EACCES' in output:
            raise PermissionDeniedError(f'cannot upgrade claude-vm in {sys.prefix}')
        raise UpdateError(f'Failed to install claude-vm {version}: {ex}')
    except PermissionError:
        raise PermissionDeniedError(f'cannot run {sys.executable}')
    except FileNotFoundError as ex:
        raise UpdateError(f'Failed to install claude-vm {version}: {ex}')
    clear_cache()
