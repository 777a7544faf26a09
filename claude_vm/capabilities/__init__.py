"""Capability exports: descriptors, dependency resolution and the embedded registry."""

from __future__ import annotations

from .registry import (
    CAPABILITY_IDS,
    Capability,
    CapabilityRegistry,
    McpServer,
    default_registry,
)

__all__ = [
    'CAPABILITY_IDS',
    'Capability',
    'CapabilityRegistry',
    'McpServer',
    'default_registry',
]
