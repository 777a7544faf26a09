"""
Ephemeral session VMs cloned from a project template.

A :class:`VmSession` owns exactly one clone. ``close`` stops and deletes
it at most once, no matter how many exit paths reach it; use the session
as a context manager so cleanup runs on errors, ``KeyboardInterrupt`` and
SIGTERM/SIGHUP alike.
"""

from __future__ import annotations

import atexit
import os
import signal
import threading
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from ..config import Config
from ..network import policy_env
from ..phases import (
    BASE_CONTEXT_PATH,
    PhaseContext,
    build_entrypoint,
    collect_runtime_scripts,
    copy_text,
    generate_base_context,
    run_host_phases,
    run_teardown_phases,
)
from ..project import Project
from .mount import Mount, compute_mounts

log = logger

_FORWARDED_SIGNALS = ('SIGTERM', 'SIGHUP')


def session_name(project: Project, pid: Optional[int] = None) -> str:
    return f'{project.template_name}-{os.getpid() if pid is None else pid}'


def session_workdir(project: Project, cwd: Optional[str | Path] = None) -> Path:
    """
    The caller's directory when it lies inside the project, else the project root.

    The project root is mounted at the same path in the VM, so a
    subdirectory of it exists there too.
    """
    root = Path(project.root).resolve()
    try:
        here = Path(cwd if cwd is not None else Path.cwd()).resolve()
    except OSError:
        return root
    if here == root or root in here.parents:
        return here
    return root


class VmSession:
    def __init__(self, name: str, lima, *, mounts: Sequence[Mount] = (), verbose: bool = False):
        self.name = name
        self.lima = lima
        self.mounts = list(mounts)
        self.verbose = verbose
        self._cleaned_up = False
        self._lock = threading.Lock()
        self._old_handlers = {}

    @classmethod
    def create(
        cls,
        project: Project,
        *,
        lima,
        verbose: bool = False,
        mount_conversations: bool = True,
        custom_mounts: Sequence[Mount] = (),
    ) -> 'VmSession':
        """Clone the template and start the clone; a failed start removes the clone."""
        name = session_name(project)
        mounts = compute_mounts(
            mount_conversations=mount_conversations,
            custom_mounts=custom_mounts,
            cwd=project.root,
        )
        log.info('Cloning {} -> {}', project.template_name, name)
        lima.clone(project.template_name, name, mounts=mounts, verbose=verbose)
        session = cls(name, lima, mounts=mounts, verbose=verbose)
        try:
            lima.start(name, verbose=verbose)
        except BaseException:
            session.close()
            raise
        return session

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up

    def close(self) -> None:
        """Stop and delete the VM once; later calls do nothing."""
        with self._lock:
            if self._cleaned_up:
                return
            self._cleaned_up = True
        log.info('Cleaning up session VM {}', self.name)
        try:
            self.lima.stop(self.name, verbose=self.verbose)
        except Exception as ex:
            log.warning('Failed to stop VM {}: {}', self.name, ex)
        try:
            self.lima.delete(self.name, force=True, verbose=self.verbose)
        except Exception as ex:
            log.warning('Failed to delete VM {}: {}', self.name, ex)

    def _on_signal(self, signum, frame):
        raise SystemExit(128 + signum)

    def __enter__(self) -> 'VmSession':
        atexit.register(self.close)
        if threading.current_thread() is threading.main_thread():
            for signame in _FORWARDED_SIGNALS:
                signum = getattr(signal, signame, None)
                if signum is not None:
                    self._old_handlers[signum] = signal.signal(signum, self._on_signal)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.close()
        finally:
            for signum, handler in self._old_handlers.items():
                signal.signal(signum, handler)
            self._old_handlers.clear()
            atexit.unregister(self.close)


def run_in_session(
    project: Project,
    config: Config,
    command: str,
    args: Sequence[str] = (),
    *,
    lima,
    registry=None,
    env_vars: Optional[dict[str, str]] = None,
    before_exec=None,
    workdir: Optional[Path] = None,
) -> int:
    """
    Clone, start, run runtime phases and ``command args...``, then clean up.

    ``before_exec`` is called with the started session before the
    entrypoint runs (used to check that the agent is installed). Returns
    the command's exit status; ``CommandExitCodeError`` propagates for
    non-zero codes. The command runs in ``workdir``, by default the
    project root.
    """
    from ..capabilities import default_registry

    registry = registry or default_registry()
    capabilities = registry.get_enabled(config)
    merged = registry.merge_capability_phases(config)
    custom = [m.to_mount() for m in config.mounts]

    with VmSession.create(
        project,
        lima=lima,
        verbose=config.verbose,
        mount_conversations=config.mount_conversations,
        custom_mounts=custom,
    ) as session:
        ctx = PhaseContext(project=project, vm_name=session.name)
        if before_exec is not None:
            before_exec(session)
        run_host_phases(ctx, merged.phase.host.before_runtime, 'before_runtime')
        try:
            copy_text(
                lima, session.name,
                generate_base_context(config, capabilities, session.mounts),
                BASE_CONTEXT_PATH,
            )
            network_env = policy_env(config.network) if config.is_enabled('network-isolation') else None
            entrypoint = build_entrypoint(
                collect_runtime_scripts(merged, ctx),
                vm_name=session.name,
                env_vars=env_vars,
                network_env=network_env,
            )
            if config.verbose:
                log.debug('Session entrypoint:\n{}', entrypoint)
            return lima.shell(
                session.name,
                'bash',
                ['-c', entrypoint, '--', command, *args],
                workdir=Path(workdir or project.root),
                forward_ssh_agent=config.forward_ssh_agent,
            )
        finally:
            run_host_phases_quietly(ctx, merged.phase.host.after_runtime, 'after_runtime')
            run_teardown_phases(lima, ctx, merged)


def run_host_phases_quietly(ctx: PhaseContext, phases, phase_type: str) -> None:
    try:
        run_host_phases(ctx, phases, phase_type)
    except Exception as ex:
        log.warning('Host {} phases failed: {}', phase_type, ex)
