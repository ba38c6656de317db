"""Shared CLI options and orchestrator construction."""

from __future__ import annotations

import scriptconfig as scfg
from loguru import logger

from ..backends import select_backend
from ..config import MCPVMConfig, load_settings
from ..errors import InvalidNameError
from ..orchestrator import Orchestrator

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help='Path to settings TOML (default: user config dir).'
    )
    backend = scfg.Value(
        '',
        help='Backend to use: libvirt, utm, or vfkit (default: platform).',
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


def _load_cfg(args) -> MCPVMConfig:
    cfg = load_settings(args.config)
    if args.backend:
        cfg.backend = str(args.backend).strip()
    return cfg


def _make_orchestrator(args) -> Orchestrator:
    cfg = _load_cfg(args)
    backend = select_backend(cfg)
    return Orchestrator(backend, cfg)


def _require_vm_arg(value) -> str:
    name = str(value or '').strip()
    if not name:
        raise InvalidNameError('A VM name is required (e.g. mcpvm-test).')
    return name


def _cfg_verbosity(argv: list[str]) -> int:
    """Configured verbosity, read before argument parsing sets up logging."""
    config_value = None
    if '--config' in argv:
        idx = argv.index('--config')
        if idx + 1 < len(argv):
            config_value = argv[idx + 1]
    try:
        return load_settings(config_value).verbosity
    except Exception:
        return 1
