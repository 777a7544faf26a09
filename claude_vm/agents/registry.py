"""Embedded agent descriptors (``data/<id>/agent.toml``)."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from importlib import resources
from typing import Optional

from loguru import logger

from ..errors import InvalidConfigError

log = logger

AGENT_IDS = ('claude', 'opencode')


@dataclass(frozen=True)
class Agent:
    id: str
    name: str
    command: str
    description: str = ''
    requires_authentication: bool = False
    default_args: tuple[str, ...] = ()
    required_capabilities: tuple[str, ...] = ()
    config_dir: str = ''
    context_file: str = ''
    mcp_config_file: str = ''
    install_script: str = ''
    authenticate_script: str = ''
    deploy_script: str = ''

    @property
    def mcp_config_path(self) -> str:
        """``mcp_config_file`` with ``~`` spelled ``$HOME`` for use inside double quotes."""
        path = self.mcp_config_file or '~/.claude.json'
        if path.startswith('~/'):
            path = '$HOME/' + path[2:]
        return path

    def validate(self) -> 'Agent':
        if not self.id:
            raise InvalidConfigError('Agent id cannot be empty')
        if not self.command:
            raise InvalidConfigError(f"Agent '{self.id}': command cannot be empty")
        if not self.deploy_script.strip():
            raise InvalidConfigError(f"Agent '{self.id}': a deploy script is required")
        if self.requires_authentication and not self.authenticate_script.strip():
            raise InvalidConfigError(
                f"Agent '{self.id}' requires authentication but has no authenticate script"
            )
        return self


def _read_data(agent_id: str, relpath: str) -> str:
    root = resources.files(__package__).joinpath('data', agent_id)
    return root.joinpath(relpath).read_text(encoding='utf-8')


def _script(section: dict, agent_id: str, what: str) -> str:
    """A section provides either ``script`` or ``script_file``."""
    if not section:
        return ''
    if section.get('script'):
        return str(section['script'])
    relpath = section.get('script_file')
    if not relpath:
        return ''
    try:
        return _read_data(agent_id, relpath)
    except (FileNotFoundError, OSError) as ex:
        raise InvalidConfigError(
            f"Agent '{agent_id}': {what} script '{relpath}' not found ({ex})"
        )


def agent_from_dict(raw: dict, agent_id: Optional[str] = None) -> Agent:
    meta = raw.get('agent', {})
    agent_id = agent_id or str(meta.get('id', ''))
    paths = raw.get('paths', {})
    return Agent(
        id=str(meta.get('id', '')),
        name=str(meta.get('name', agent_id)),
        command=str(meta.get('command', '')),
        description=str(meta.get('description', '')),
        requires_authentication=bool(meta.get('requires_authentication', False)),
        default_args=tuple(str(a) for a in meta.get('default_args', ())),
        required_capabilities=tuple(raw.get('requires', {}).get('capabilities', ())),
        config_dir=str(paths.get('config_dir', '')),
        context_file=str(paths.get('context_file', '')),
        mcp_config_file=str(paths.get('mcp_config_file', '')),
        install_script=_script(raw.get('install', {}), agent_id, 'install'),
        authenticate_script=_script(raw.get('authenticate', {}), agent_id, 'authenticate'),
        deploy_script=_script(raw.get('deploy', {}), agent_id, 'deploy'),
    ).validate()


class AgentRegistry:
    def __init__(self, agents=None):
        if agents is None:
            agents = [self._load_embedded(agent_id) for agent_id in AGENT_IDS]
        self.agents = {agent.id: agent for agent in agents}

    @staticmethod
    def _load_embedded(agent_id: str) -> Agent:
        try:
            raw = tomllib.loads(_read_data(agent_id, 'agent.toml'))
        except tomllib.TOMLDecodeError as ex:
            raise InvalidConfigError(f"Agent '{agent_id}': invalid agent.toml ({ex})")
        return agent_from_dict(raw, agent_id)

    def get(self, agent_id: str) -> Agent:
        try:
            return self.agents[agent_id]
        except KeyError:
            available = ', '.join(self.list_available())
            raise InvalidConfigError(
                f"Unknown agent '{agent_id}'. Available agents: {available}"
            )

    def list_available(self) -> list[str]:
        return sorted(self.agents)


def verify_requirements(agent: Agent, config) -> None:
    for cap_id in agent.required_capabilities:
        if not config.is_enabled(cap_id):
            raise InvalidConfigError(
                f"Agent '{agent.id}' requires the '{cap_id}' capability. "
                f'Enable it with: claude-vm setup --{cap_id}'
            )
