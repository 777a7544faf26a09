"""Plan the host-to-guest directory mounts for a session."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

import ubelt as ub
from loguru import logger

from ..errors import InvalidConfigError
from ..gitutil import get_git_common_dir, get_git_root, is_worktree
from ..shell import expand_tilde

log = logger


@dataclass(frozen=True)
class Mount:
    location: Path
    mount_point: Optional[PurePosixPath] = None
    writable: bool = False

    @property
    def guest_path(self) -> str:
        """Where the directory appears in the guest; defaults to the host path."""
        return str(self.mount_point if self.mount_point is not None else self.location)

    @classmethod
    def from_spec(cls, spec: str) -> 'Mount':
        """
        Parse a docker-style mount string.

        Accepted forms are ``HOST``, ``HOST:ro``, ``HOST:rw``,
        ``HOST:GUEST`` and ``HOST:GUEST:ro|rw``. Mounts default to
        writable unless ``ro`` is given.

        Example:
            >>> from claude_vm.vm.mount import Mount
            >>> m = Mount.from_spec('/data:/mnt/data:ro')
            >>> (str(m.location), str(m.mount_point), m.writable)
            ('/data', '/mnt/data', False)
        """
        parts = spec.split(':')
        mode = None
        if len(parts) >= 2 and parts[-1] in {'ro', 'rw'}:
            mode = parts.pop()
        if len(parts) == 1:
            host, guest = parts[0], None
        elif len(parts) == 2:
            host, guest = parts
        else:
            raise InvalidConfigError(
                f"Invalid mount spec '{spec}'. "
                'Expected HOST[:GUEST][:ro|rw]'
            )
        if not host:
            raise InvalidConfigError(f"Invalid mount spec '{spec}': empty host path")
        location = _absolute(host, spec)
        mount_point = None
        if guest:
            mount_point = PurePosixPath(str(_absolute(guest, spec)))
        return cls(location, mount_point, writable=(mode != 'ro'))


def _absolute(path: str, spec: str) -> Path:
    expanded = expand_tilde(path)
    if expanded is None:
        raise InvalidConfigError(f"Cannot expand '{path}' in mount spec '{spec}'")
    if not expanded.is_absolute():
        raise InvalidConfigError(
            f"Mount path must be absolute: '{path}' (in '{spec}')"
        )
    return expanded


def encode_project_path(path: str | Path) -> str:
    """Folder name the agent uses for a project's conversation history."""
    return re.sub(r'[^A-Za-z0-9]', '-', str(path))


def vm_home(user: Optional[str] = None) -> PurePosixPath:
    user = user or os.environ.get('USER') or 'lima'
    return PurePosixPath('/home') / f'{user}.linux'


def conversation_folder(project_path: str | Path) -> Optional[Path]:
    home = os.environ.get('HOME')
    if not home:
        return None
    folder = ub.Path(home) / '.claude' / 'projects' / encode_project_path(project_path)
    try:
        folder.ensuredir()
    except OSError as ex:
        log.warning('Could not create conversation folder {}: {}', folder, ex)
        return None
    return Path(folder)


class MountPlan:
    """Accumulates mounts, dropping duplicate hosts and rejecting guest clashes."""

    def __init__(self):
        self.mounts: list[Mount] = []

    def add(self, mount: Mount) -> None:
        if any(m.location == mount.location for m in self.mounts):
            log.debug('Skipping duplicate mount of {}', mount.location)
            return
        for m in self.mounts:
            if m.guest_path == mount.guest_path:
                raise InvalidConfigError(
                    f'Mount conflict: {mount.location} and {m.location} '
                    f'both target {mount.guest_path} in the VM'
                )
        self.mounts.append(mount)


def compute_mounts(
    mount_conversations: bool = True,
    custom_mounts: Iterable[Mount] = (),
    cwd: Optional[str | Path] = None,
) -> list[Mount]:
    plan = MountPlan()
    project_path = get_git_root(cwd)
    if project_path is None:
        project_path = Path(cwd) if cwd is not None else Path.cwd()
    project_path = project_path.resolve()
    plan.add(Mount(project_path, writable=True))

    if is_worktree(cwd):
        common = get_git_common_dir(cwd)
        if common is not None:
            plan.add(Mount(common.parent, writable=True))

    if mount_conversations:
        folder = conversation_folder(project_path)
        if folder is not None:
            guest = vm_home() / '.claude' / 'projects' / folder.name
            plan.add(Mount(folder, guest, writable=True))

    for mount in custom_mounts:
        plan.add(mount)
    return plan.mounts
