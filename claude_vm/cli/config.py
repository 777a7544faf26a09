from __future__ import annotations

import sys
from pathlib import Path

import scriptconfig as scfg
import ubelt as ub

from .. import config as config_mod
from ..config import CONFIG_FILENAME, dump_toml
from ..errors import InvalidConfigError
from ..project import Project
from ._common import _BaseCommand


class ConfigValidateCLI(_BaseCommand):
    """Check the global and project config files (or one given file)."""

    file = scfg.Value(None, position=1, help='Validate only this TOML file.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if args.file:
            fpath = Path(args.file)
            print(f'Validating {fpath}...')
            try:
                cfg = config_mod.from_file(fpath)
            except InvalidConfigError as ex:
                print('✗ Configuration is invalid!')
                print(f'  Error: {ex}')
                raise
            _print_warnings(cfg.validate())
            print('✓ Configuration is valid!')
            return 0

        project = Project.detect()
        print('Validating configuration files...\n')
        candidates = [('Global config', config_mod.global_config_path())]
        if project.is_worktree:
            candidates.append(('Main repository config', project.main_repo_root / CONFIG_FILENAME))
        candidates.append(('Project config', project.root / CONFIG_FILENAME))
        for label, fpath in candidates:
            if fpath is None:
                print(f'  {label}: HOME is not set')
            elif fpath.exists():
                print(f'  {label}: {fpath}')
            else:
                print(f'  {label}: {fpath} - not found (optional)')

        print('\nLoading and validating configuration...')
        try:
            cfg = config_mod.load(project.root, project.main_repo_root)
        except InvalidConfigError as ex:
            print('✗ Configuration is invalid!')
            print(f'  Error: {ex}')
            raise
        _print_warnings(cfg.validate())
        print('✓ Configuration is valid!')
        return 0


def _print_warnings(warnings: list[str]) -> None:
    for msg in warnings:
        print(f'  ⚠ {msg}')


class ConfigShowCLI(_BaseCommand):
    """Print the effective (merged) configuration as TOML."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        project = Project.detect()
        cfg = config_mod.load(project.root, project.main_repo_root)
        print('# Effective configuration')
        print('# (environment > project > main repository > global > defaults)')
        text = dump_toml(cfg)
        if sys.stdout.isatty():
            text = ub.highlight_code(text, 'toml')
        print(text, end='' if text.endswith('\n') else '\n')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Inspect configuration."""

    validate = ConfigValidateCLI
    show = ConfigShowCLI
