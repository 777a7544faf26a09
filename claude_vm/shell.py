"""Quoting and naming primitives used wherever scripts are generated."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable, Optional

from .errors import InvalidEnvKeyError

_ENV_KEY_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_FILENAME_DROP_RE = re.compile(r'[^A-Za-z0-9._-]')


def shell_escape(s: str) -> str:
    """Quote a string as a single bash token (``it's`` -> ``'it'\\''s'``)."""
    return "'" + s.replace("'", "'\\''") + "'"


def join_args(args: Iterable[str]) -> str:
    return ' '.join(shell_escape(a) for a in args)


def sanitize_filename(s: str) -> str:
    return _FILENAME_DROP_RE.sub('', s)


def validate_env_key(key: str) -> None:
    if not key:
        raise InvalidEnvKeyError('Environment variable name cannot be empty')
    if not (key[0].isascii() and (key[0].isalpha() or key[0] == '_')):
        raise InvalidEnvKeyError(
            f"Invalid environment variable name '{key}': "
            'must start with a letter or underscore'
        )
    if not _ENV_KEY_RE.match(key):
        raise InvalidEnvKeyError(
            f"Invalid environment variable name '{key}': "
            'only letters, digits and underscores are allowed'
        )


def build_env_export(key: str, value: str) -> str:
    validate_env_key(key)
    return f'export {key}={shell_escape(value)}'


def expand_tilde(path: str) -> Optional[Path]:
    """
    Expand ``~``, ``~/rest`` and ``~user/rest``.

    Returns None when HOME is unset (for the bare forms) or the named
    user does not exist. Paths without a leading tilde are returned
    unchanged.
    """
    if not path.startswith('~'):
        return Path(path)
    head, sep, rest = path[1:].partition('/')
    if head == '':
        home = os.environ.get('HOME')
        if not home:
            return None
        base = Path(home)
    else:
        import pwd

        try:
            base = Path(pwd.getpwnam(head).pw_dir)
        except KeyError:
            return None
    return base / rest if rest else base
