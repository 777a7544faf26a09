"""Agent exports: the descriptors and the in-VM installer."""

from __future__ import annotations

from .registry import AGENT_IDS, Agent, AgentRegistry, verify_requirements

__all__ = ['AGENT_IDS', 'Agent', 'AgentRegistry', 'verify_requirements']
