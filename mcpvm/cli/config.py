"""Settings file commands: write defaults and show the resolved settings."""

from __future__ import annotations

import sys
from pathlib import Path

import scriptconfig as scfg

from ..config import MCPVMConfig, dump_toml, load_settings, save, settings_path
from ..util import expand
from ._common import _BaseCommand, log


def _settings_file(config) -> Path:
    return Path(expand(str(config))) if config else settings_path()


class ConfigInitCLI(_BaseCommand):
    """Write a settings file holding the default values."""

    force = scfg.Value(
        False,
        isflag=True,
        help='Overwrite the settings file if it already exists.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _settings_file(args.config)
        if path.exists() and not args.force:
            print(f'Settings file already exists: {path}', file=sys.stderr)
            print('Use --force to overwrite it.', file=sys.stderr)
            return 2
        cfg = MCPVMConfig()
        if args.backend:
            cfg.backend = str(args.backend).strip()
        save(path, cfg)
        log.info('Wrote default settings to {}', path)
        print(f'Wrote settings file: {path}')
        return 0


class ConfigShowCLI(_BaseCommand):
    """Show the settings in effect after defaults and overrides."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _settings_file(args.config)
        cfg = load_settings(args.config)
        if args.backend:
            cfg.backend = str(args.backend).strip()
        source = path if path.exists() else 'built-in defaults'
        print(f'# Settings: {source}')
        print(dump_toml(cfg), end='')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Settings file management commands."""

    init = ConfigInitCLI
    show = ConfigShowCLI
