"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import ClaudeVMModalCLI, main

__all__ = ['ClaudeVMModalCLI', 'main']
