"""Adapter over ``limactl``, the VM manager that hosts templates and sessions."""

from __future__ import annotations

import json
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, TYPE_CHECKING

from loguru import logger

from .errors import CommandExitCodeError, LimaNotInstalledError, VMCommandError
from .util import CmdError, run_cmd, which

if TYPE_CHECKING:
    from .vm.mount import Mount
    from .vm.port_forward import PortForward

log = logger

BASE_IMAGE = 'debian-13'


@dataclass(frozen=True)
class VmInfo:
    name: str
    status: str

    @property
    def is_running(self) -> bool:
        return self.status == 'Running'


@dataclass(frozen=True)
class HostVmFlavor:
    vm_type: str
    mount_type: str
    use_rosetta: bool

    @classmethod
    def current(cls) -> 'HostVmFlavor':
        if sys.platform == 'darwin':
            return cls(
                vm_type='vz',
                mount_type='virtiofs',
                use_rosetta=platform.machine() in {'arm64', 'aarch64'},
            )
        return cls(vm_type='qemu', mount_type='reverse-sshfs', use_rosetta=False)


def mounts_set_arg(mounts: Sequence['Mount']) -> str:
    """Render mounts as a ``--set`` expression understood by limactl."""
    items = []
    for m in mounts:
        item = {'location': str(m.location)}
        if m.mount_point is not None:
            item['mountPoint'] = str(m.mount_point)
        item['writable'] = bool(m.writable)
        items.append(json.dumps(item, separators=(',', ':')))
    return f'.mounts=[{",".join(items)}]'


class LimaCtl:
    """
    Thin wrapper around the ``limactl`` command line.

    Every operation raises :class:`VMCommandError` when limactl exits
    non-zero or cannot be spawned. With ``verbose`` set the child's output
    goes to the terminal, otherwise it is discarded.
    """

    binary = 'limactl'

    def is_installed(self) -> bool:
        return which(self.binary) is not None

    def require_installed(self) -> None:
        if not self.is_installed():
            raise LimaNotInstalledError()

    def _run(self, args: Sequence[str], *, verbose: bool, what: str) -> None:
        cmd = [self.binary, *args]
        try:
            run_cmd(cmd, check=True, capture=False, quiet=not verbose)
        except CmdError as ex:
            raise VMCommandError(
                f'Failed to {what}', cmd=cmd, code=ex.result.code
            )
        except FileNotFoundError:
            raise LimaNotInstalledError()

    def create(
        self,
        name: str,
        template: str = BASE_IMAGE,
        disk: int = 20,
        memory: int = 8,
        cpus: int = 4,
        port_forwards: Sequence['PortForward'] = (),
        setup_mounts: Sequence['Mount'] = (),
        verbose: bool = False,
    ) -> None:
        if not template.startswith('template:'):
            template = f'template:{template}'
        flavor = HostVmFlavor.current()
        args = [
            'create',
            f'--name={name}',
            template,
            f'--vm-type={flavor.vm_type}',
            f'--mount-type={flavor.mount_type}',
            '--tty=false',
        ]
        if flavor.use_rosetta:
            args.append('--rosetta')
        args += ['--set', mounts_set_arg(setup_mounts)]
        args += [f'--disk={disk}', f'--memory={memory}', f'--cpus={cpus}']
        for index, pf in enumerate(port_forwards):
            for key, value in pf.to_set_args(index):
                args += ['--set', f'{key}={value}']
        self._run(args, verbose=verbose, what=f'create VM {name}')

    def start(self, name: str, verbose: bool = False) -> None:
        self._run(['start', name], verbose=verbose, what=f'start VM {name}')

    def stop(self, name: str, verbose: bool = False) -> None:
        self._run(['stop', name], verbose=verbose, what=f'stop VM {name}')

    def delete(self, name: str, force: bool = False, verbose: bool = False) -> None:
        args = ['delete']
        if force:
            args.append('--force')
        args.append(name)
        self._run(args, verbose=verbose, what=f'delete VM {name}')

    def clone(
        self,
        source: str,
        dest: str,
        mounts: Sequence['Mount'] = (),
        verbose: bool = False,
    ) -> None:
        """Clone ``source`` to ``dest``; newer limactl calls the verb ``copy``."""
        try:
            self._clone_with('clone', source, dest, mounts, verbose)
        except VMCommandError as ex:
            log.debug('limactl clone failed ({}), retrying with copy', ex)
            self._clone_with('copy', source, dest, mounts, verbose)

    def _clone_with(self, verb, source, dest, mounts, verbose) -> None:
        args = [verb, source, dest, '--tty=false']
        if mounts:
            args += ['--set', mounts_set_arg(mounts)]
        self._run(
            args, verbose=verbose, what=f'{verb} VM from {source} to {dest}'
        )

    def shell(
        self,
        name: str,
        cmd: str,
        args: Sequence[str] = (),
        *,
        workdir: Optional[str | Path] = None,
        forward_ssh_agent: bool = False,
        check: bool = True,
    ) -> int:
        """
        Run ``cmd args...`` inside the VM with the terminal attached.

        Returns the exit status. With ``check`` a non-zero status raises
        :class:`CommandExitCodeError`.
        """
        full = [self.binary, 'shell']
        if workdir is not None:
            full += ['--workdir', str(workdir)]
        if forward_ssh_agent:
            full.append('-A')
        full += [name, cmd, *args]
        try:
            res = run_cmd(full, check=False, capture=False)
        except FileNotFoundError:
            raise LimaNotInstalledError()
        if res.code < 0:
            raise VMCommandError(
                'Command terminated by signal', cmd=full, code=res.code
            )
        if check and res.code != 0:
            raise CommandExitCodeError(res.code)
        return res.code

    def shell_output(self, name: str, cmd: str, args: Sequence[str] = ()) -> str:
        """Run a command in the VM and return its stdout, failing on non-zero."""
        full = [self.binary, 'shell', name, cmd, *args]
        try:
            res = run_cmd(full, check=True, capture=True)
        except CmdError as ex:
            raise VMCommandError(
                f'Command failed in VM {name}: {ex.result.stderr.strip()}',
                cmd=full,
                code=ex.result.code,
            )
        except FileNotFoundError:
            raise LimaNotInstalledError()
        return res.stdout

    def copy(self, src: str | Path, name: str, dest: str) -> None:
        self._run(
            ['copy', str(src), f'{name}:{dest}'],
            verbose=True,
            what=f'copy {src} into {name}',
        )

    def list(self) -> list[VmInfo]:
        cmd = [self.binary, 'list', '--format', '{{.Name}}\t{{.Status}}']
        try:
            res = run_cmd(cmd, check=True, capture=True)
        except CmdError as ex:
            raise VMCommandError('Failed to list VMs', cmd=cmd, code=ex.result.code)
        except FileNotFoundError:
            raise LimaNotInstalledError()
        vms = []
        for line in res.stdout.splitlines():
            parts = line.split('\t')
            if len(parts) >= 2:
                vms.append(VmInfo(name=parts[0], status=parts[1]))
        return vms

    def vm_exists(self, name: str) -> bool:
        return any(vm.name == name for vm in self.list())
