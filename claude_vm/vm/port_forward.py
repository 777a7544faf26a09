"""Reverse Unix-socket forwards configured on the template at create time."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Mapping

from loguru import logger

from ..errors import InvalidConfigError, VMCommandError
from ..util import CmdError, run_cmd

log = logger

ALLOWED_DETECT_COMMANDS = (
    'gpgconf --list-dir agent-extra-socket',
    'gpgconf --list-dir agent-socket',
)


def validate_socket_path(path: str) -> None:
    if '..' in path:
        raise InvalidConfigError(f"Socket path contains path traversal: '{path}'")
    if '\0' in path:
        raise InvalidConfigError('Socket path contains null byte')
    if not path.startswith('/'):
        raise InvalidConfigError(f"Socket path must be absolute: '{path}'")
    if '\n' in path or '\r' in path:
        raise InvalidConfigError(
            f"Socket path contains invalid characters: {path!r}"
        )


@dataclass(frozen=True)
class PortForward:
    host_socket: str
    guest_socket: str
    reverse: bool = True

    @classmethod
    def unix_socket(cls, host_socket: str, guest_socket: str) -> 'PortForward':
        validate_socket_path(host_socket)
        validate_socket_path(guest_socket)
        return cls(host_socket, guest_socket, reverse=True)

    def to_set_args(self, index: int) -> list[tuple[str, str]]:
        key = f'.portForwards[{index}]'
        return [
            (f'{key}.reverse', 'true' if self.reverse else 'false'),
            (f'{key}.hostSocket', f'"{self.host_socket}"'),
            (f'{key}.guestSocket', f'"{self.guest_socket}"'),
            (f'{key}.hostPortRange', '[0,0]'),
            (f'{key}.guestPortRange', '[0,0]'),
        ]


def _detect_once(command: str) -> str:
    try:
        res = run_cmd(command.split(), check=True, capture=True)
    except CmdError as ex:
        raise VMCommandError(
            f'Socket detection command failed: {ex.result.stderr.strip()}'
        )
    except FileNotFoundError:
        raise VMCommandError(f"Socket detection command not found: '{command}'")
    path = res.stdout.strip()
    if not path:
        raise VMCommandError('Socket detection returned empty path')
    return path


def detect_socket_path(
    command: str,
    *,
    attempts: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Run a whitelisted detection command, retrying with a 1 second pause."""
    if command not in ALLOWED_DETECT_COMMANDS:
        raise InvalidConfigError(
            f"Socket detection command not allowed: '{command}'. "
            f'Allowed commands: {list(ALLOWED_DETECT_COMMANDS)}'
        )
    for attempt in range(1, attempts + 1):
        try:
            return _detect_once(command)
        except VMCommandError as ex:
            if attempt == attempts:
                raise
            log.warning(
                'Socket detection attempt {}/{} failed: {}. Retrying...',
                attempt,
                attempts,
                ex,
            )
            sleep(1.0)
    raise AssertionError('unreachable')


def resolve_forward(host: str | Mapping[str, str], guest: str) -> PortForward:
    """Build a forward from a static host path or a ``{detect = ...}`` table."""
    if isinstance(host, Mapping):
        detect = host.get('detect')
        if not detect:
            raise InvalidConfigError(f'Forward host table needs "detect": {host!r}')
        host_path = detect_socket_path(detect)
    else:
        host_path = host
    return PortForward.unix_socket(host_path, guest)
