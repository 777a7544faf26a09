"""Collect environment variables passed into a session with --env, --env-file and --inherit-env."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from loguru import logger

from .errors import InvalidConfigError
from .shell import build_env_export, validate_env_key

log = logger


def parse_env_args(env_args: Iterable[str]) -> dict[str, str]:
    env_vars: dict[str, str] = {}
    for arg in env_args:
        key, sep, value = arg.partition('=')
        if not sep:
            raise InvalidConfigError(
                f'Invalid env format: {arg}. Expected KEY=VALUE'
            )
        validate_env_key(key)
        env_vars[key] = value
    return env_vars


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def load_env_file(path: str | Path) -> dict[str, str]:
    path = Path(path)
    try:
        content = path.read_text(encoding='utf-8')
    except OSError as ex:
        raise InvalidConfigError(f'Failed to read env file {path}: {ex}')
    env_vars: dict[str, str] = {}
    for lineno, raw in enumerate(content.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        key, sep, value = line.partition('=')
        if not sep:
            raise InvalidConfigError(
                f'Invalid env format at {path}:{lineno}: {line}'
            )
        key = key.strip()
        try:
            validate_env_key(key)
        except InvalidConfigError as ex:
            raise InvalidConfigError(f'{path}:{lineno}: {ex}')
        env_vars[key] = _unquote(value.strip())
    return env_vars


def inherit_env(names: Iterable[str]) -> dict[str, str]:
    env_vars: dict[str, str] = {}
    for name in names:
        validate_env_key(name)
        value = os.environ.get(name)
        if value is None:
            log.info('Not inheriting {}: not set on host', name)
            continue
        env_vars[name] = value
    return env_vars


def collect_env_vars(
    env: Iterable[str] = (),
    env_files: Iterable[str | Path] = (),
    inherit: Iterable[str] = (),
) -> dict[str, str]:
    """Merge env files, inherited host variables, then explicit KEY=VALUE pairs."""
    merged: dict[str, str] = {}
    for fpath in env_files:
        merged.update(load_env_file(fpath))
    merged.update(inherit_env(inherit))
    merged.update(parse_env_args(env))
    return merged


def build_export_lines(env_vars: dict[str, str]) -> list[str]:
    return [build_env_export(k, v) for k, v in sorted(env_vars.items())]
