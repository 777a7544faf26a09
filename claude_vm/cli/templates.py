"""``info``, ``list``, ``clean`` and ``clean-all``: inspect and remove templates."""

from __future__ import annotations

import scriptconfig as scfg

from ..capabilities import default_registry
from ..project import Project
from ..status import probe_template, status_line
from ..vm import template
from ._common import _BaseCommand, _confirm, _get_lima, _load_project_config


class InfoCLI(_BaseCommand):
    """Show the project, its template and the effective VM settings."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        project, cfg = _load_project_config()
        lima = _get_lima()
        print('Project Information:')
        print(f'  Path: {project.root}')
        if project.is_worktree:
            print(f'  Main repository: {project.main_repo_root}')
        print(f'  Template: {project.template_name}')
        probe = probe_template(lima, project.template_name)
        print('  ' + status_line(probe.ok, 'Status', probe.detail))
        if probe.ok is None:
            print("\nRun 'claude-vm setup' to create the template.")
            return 0

        print('\nConfiguration:')
        print(f'  Disk: {cfg.vm.disk}GB')
        print(f'  Memory: {cfg.vm.memory}GB')
        print(f'  CPUs: {cfg.vm.cpus}')
        enabled = [cap.id for cap in default_registry().get_enabled(cfg)]
        if enabled:
            print(f'  Capabilities: {", ".join(enabled)}')

        if cfg.mounts:
            print('\nMounts:')
            for m in cfg.mounts:
                mode = 'rw' if m.writable else 'ro'
                if m.mount_point:
                    print(f'  - {m.location} -> {m.mount_point} ({mode})')
                else:
                    print(f'  - {m.location} ({mode})')

        if cfg.runtime.scripts:
            print('\nRuntime Scripts:')
            for script in cfg.runtime.scripts:
                print(f'  - {script}')
        return 0


class ListCLI(_BaseCommand):
    """List every claude-vm template on this machine."""

    unused = scfg.Value(False, isflag=True, help='Only templates unused for 30 days.')
    disk_usage = scfg.Value(False, isflag=True, help='Show size and last use.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        names = template.list_all(_get_lima())
        if not names:
            print('No claude-vm templates found.')
            return 0
        if args.unused:
            names = [n for n in names if template.is_unused(n)]
            if not names:
                print('No unused templates found.')
                return 0
        if args.disk_usage:
            print(f'{"TEMPLATE":<50} {"SIZE":>10} {"LAST USED":>15}')
            print('-' * 77)
            for name in names:
                size = template.get_disk_usage(name)
                last = template.format_last_used(template.get_last_access_time(name))
                print(f'{name:<50} {size:>10} {last:>15}')
        else:
            print('Claude VM templates:')
            for name in names:
                print(f'  {name}')
        return 0


class CleanCLI(_BaseCommand):
    """Delete the template of the current project."""

    yes = scfg.Value(False, isflag=True, short_alias=['y'], help='Do not ask for confirmation.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        project = Project.detect()
        lima = _get_lima()
        name = project.template_name
        if not template.exists(lima, name):
            print(f'Template does not exist: {name}')
            return 0
        if not _confirm(f'Delete template {name}? [y/N] ', yes=args.yes):
            print('Aborted.')
            return 0
        print(f'Cleaning template: {name}')
        template.delete(lima, name)
        print(f'Template cleaned successfully: {name}')
        return 0


class CleanAllCLI(_BaseCommand):
    """Delete every claude-vm template."""

    yes = scfg.Value(False, isflag=True, short_alias=['y'], help='Do not ask for confirmation.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        lima = _get_lima()
        names = template.list_all(lima)
        if not names:
            print('No claude-vm templates found.')
            return 0
        print('The following templates will be deleted:')
        for name in names:
            print(f'  - {name}')
        print()
        if not _confirm(f'Delete {len(names)} template(s)? [y/N] ', yes=args.yes):
            print('Aborted.')
            return 0
        print('Cleaning all claude-vm templates...')
        for name in names:
            print(f'  Cleaning: {name}')
            template.delete(lima, name)
        print('All templates cleaned successfully.')
        return 0
