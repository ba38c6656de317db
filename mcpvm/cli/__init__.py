"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import MCPVMModalCLI, main

__all__ = ['MCPVMModalCLI', 'main']
