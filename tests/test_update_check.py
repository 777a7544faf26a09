from __future__ import annotations

import io
import stat
import time

import pytest

from claude_vm import __version__, update_check
from claude_vm.util import CmdError, CmdResult
from claude_vm.errors import PermissionDeniedError, UpdateError
from claude_vm.update_check import (
    UpdateCheckCache,
    check_and_notify,
    format_notification,
    is_ci_environment,
    is_newer_version,
    load_cache,
    parse_version,
    perform_version_check,
    sanitize_version,
    save_cache,
)


def test_version_comparison() -> None:
    assert parse_version('v2.0.1') == (2, 0, 1)
    assert is_newer_version('99.0.0')
    assert not is_newer_version(__version__)
    assert not is_newer_version('0.0.1', '0.1.0')
    assert is_newer_version('1.2.10', '1.2.9')


def test_sanitize_version() -> None:
    assert sanitize_version('1.2.3\x1b[31m') == '1.2.331m'
    assert sanitize_version('1.0.0-rc.1+b') == '1.0.0-rc.1+b'


def test_cache_staleness() -> None:
    now = 1_000_000
    assert not UpdateCheckCache(last_check=now - 3599).is_stale(1, now=now)
    assert UpdateCheckCache(last_check=now - 3600).is_stale(1, now=now)
    assert not UpdateCheckCache(last_check=now + 500).is_stale(1, now=now)


def test_cache_round_trip_and_permissions(home) -> None:
    save_cache(UpdateCheckCache(last_check=42, latest_version='9.9.9', update_available=True))
    fpath = home / '.claude-vm' / 'update-check.json'
    assert stat.S_IMODE(fpath.stat().st_mode) == 0o600
    assert load_cache() == UpdateCheckCache(42, '9.9.9', True)
    fpath.write_text('{not json')
    assert load_cache() is None


def test_ci_detection() -> None:
    assert is_ci_environment({'GITHUB_ACTIONS': 'true'})
    assert not is_ci_environment({'PATH': '/bin'})


def test_perform_version_check_rejects_malformed() -> None:
    cache = perform_version_check(fetch=lambda: '99.0.0')
    assert cache.update_available and cache.latest_version == '99.0.0'
    cache = perform_version_check(fetch=lambda: '\x1b]0;pwned')
    assert cache.latest_version is None and not cache.update_available


def test_format_notification_box_is_aligned() -> None:
    lines = format_notification('9.9.9', current='0.1.0').splitlines()
    assert len({len(line) for line in lines}) == 1
    assert '9.9.9' in lines[4]


def test_check_and_notify_uses_cache(home) -> None:
    calls = []

    def fetch():
        calls.append(1)
        return '99.0.0'

    out = io.StringIO()
    check_and_notify(True, 72, fetch=fetch, environ={}, stream=out)
    check_and_notify(True, 72, fetch=fetch, environ={}, stream=out)
    assert len(calls) == 1
    assert out.getvalue().count('A new version of claude-vm is available!') == 2


def test_check_and_notify_disabled_and_ci(home) -> None:
    def fetch():
        raise AssertionError('must not fetch')

    assert check_and_notify(False, fetch=fetch, environ={}) is None
    assert check_and_notify(True, fetch=fetch, environ={'CI': '1'}) is None


def test_check_and_notify_swallows_errors(home) -> None:
    def fetch():
        raise UpdateError('offline')

    out = io.StringIO()
    assert check_and_notify(True, fetch=fetch, environ={}, stream=out) is None
    assert out.getvalue() == ''


def test_install_version(monkeypatch, home) -> None:
    calls = []
    monkeypatch.setattr(update_check, 'run_cmd', lambda cmd, **kw: calls.append(cmd))
    save_cache(UpdateCheckCache(last_check=int(time.time())))
    update_check.install_version('1.2.3')
    assert calls[0][-1] == 'claude-vm==1.2.3'
    assert load_cache() is None


def test_install_version_failure(monkeypatch, home) -> None:
    def boom(cmd, **kw):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(update_check, 'run_cmd', boom)
    with pytest.raises(UpdateError, match='1.2.3'):
        update_check.install_version('1.2.3')


def test_install_version_permission_denied(monkeypatch, home) -> None:
    def denied(cmd, **kw):
        raise CmdError(cmd, CmdResult(1, '', "ERROR: [Errno 13] Permission denied: '/usr/lib/python3'"))

    monkeypatch.setattr(update_check, 'run_cmd', denied)
    with pytest.raises(PermissionDeniedError, match='Try running with sudo'):
        update_check.install_version('1.2.3')


def test_install_version_pip_error(monkeypatch, home) -> None:
    def missing(cmd, **kw):
        raise CmdError(cmd, CmdResult(1, '', 'No matching distribution found'))

    monkeypatch.setattr(update_check, 'run_cmd', missing)
    with pytest.raises(UpdateError, match='No matching distribution'):
        update_check.install_version('9.9.9')
