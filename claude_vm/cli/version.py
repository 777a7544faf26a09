from __future__ import annotations

import scriptconfig as scfg

from .. import __version__
from .. import update_check
from ..errors import UpdateError
from ._common import _BaseCommand, _confirm


def _report_latest() -> int:
    print('\nChecking for updates...')
    latest = update_check.get_latest_version()
    if latest is None:
        print('Unable to check for updates')
    elif update_check.is_newer_version(latest):
        print(f'New version available: {update_check.sanitize_version(latest)}')
        print(
            f'\nChangelog: https://github.com/{update_check.GITHUB_REPO}'
            f'/releases/tag/v{update_check.sanitize_version(latest)}'
        )
        print("\nRun 'claude-vm update' to upgrade")
    else:
        print("You're already running the latest version")
    return 0


class VersionCLI(_BaseCommand):
    """Print the installed version."""

    check = scfg.Value(False, isflag=True, help='Also query the latest release.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        print(f'claude-vm {__version__}')
        if args.check:
            return _report_latest()
        return 0


class UpdateCLI(_BaseCommand):
    """Upgrade claude-vm to the latest (or a given) release."""

    check = scfg.Value(False, isflag=True, help='Only report whether an update exists.')
    version = scfg.Value(None, help='Install this version instead of the latest.')
    yes = scfg.Value(False, isflag=True, short_alias=['y'], help='Do not ask for confirmation.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        print(f'Current version: {__version__}')
        if args.check:
            return _report_latest()

        target = (args.version or '').strip().lstrip('v')
        if target in {'', 'latest'}:
            latest = update_check.get_latest_version()
            if latest is None:
                raise UpdateError('Unable to fetch latest version')
            if not update_check.is_newer_version(latest):
                print("You're already running the latest version")
                return 0
            target = latest
            print(f'New version available: {update_check.sanitize_version(target)}')
        target = update_check.sanitize_version(target)
        if not _confirm(f'Install claude-vm {target}? [y/N] ', yes=args.yes):
            print('Aborted.')
            return 0
        update_check.install_version(target)
        print(f'\nSuccessfully updated to version {target}')
        return 0
