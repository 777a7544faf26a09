from __future__ import annotations

import scriptconfig as scfg

from ..config import TOOL_IDS
from ..vm import template
from ._common import _BaseCommand, _get_lima, _load_project_config, log


class SetupCLI(_BaseCommand):
    """Build (or rebuild) the template VM for the current project."""

    docker = scfg.Value(False, isflag=True, help='Install Docker.')
    node = scfg.Value(False, isflag=True, help='Install Node.js.')
    python = scfg.Value(False, isflag=True, help='Install Python 3.')
    chromium = scfg.Value(False, isflag=True, help='Install Chromium and the DevTools MCP server.')
    gpg = scfg.Value(False, isflag=True, help='Forward the host GPG agent.')
    gh = scfg.Value(False, isflag=True, help='Install the GitHub CLI.')
    git = scfg.Value(False, isflag=True, help='Copy host git identity and signing settings.')
    network_isolation = scfg.Value(False, isflag=True, help='Filter VM traffic through a domain policy proxy.')
    all = scfg.Value(False, isflag=True, help='Enable every capability.')
    disk = scfg.Value(None, type=int, help='Disk size in GB.')
    memory = scfg.Value(None, type=int, help='Memory in GB.')
    cpus = scfg.Value(None, type=int, help='Number of CPUs.')
    setup_script = scfg.Value([], nargs='*', help='Extra setup script to run in the template (repeatable).')
    mount = scfg.Value([], nargs='*', help='Mount used only while building: HOST[:GUEST][:ro|rw] (repeatable).')
    agent = scfg.Value('', help='Agent to install (default from config: claude).')
    no_agent_install = scfg.Value(False, isflag=True, help='Skip installing the agent.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        overrides = {key: args[key] for key in TOOL_IDS}
        overrides.update(
            verbose=args.verbose,
            all=args.all,
            disk=args.disk,
            memory=args.memory,
            cpus=args.cpus,
            setup_script=list(args.setup_script or []),
            setup_mount=list(args.mount or []),
            agent=args.agent,
            no_agent_install=args.no_agent_install,
        )
        project, cfg = _load_project_config(overrides)
        log.debug('Setup for {} with tools={}', project.root, cfg.tools)
        template.build(project, cfg, lima=_get_lima())
        return 0
