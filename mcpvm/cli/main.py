"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from ._common import (
    _BaseCommand,
    _cfg_verbosity,
    _make_orchestrator,
    _require_vm_arg,
    log,
)
from .config import ConfigModalCLI


class SetupCLI(_BaseCommand):
    """Create, boot, and prepare a new RHEL test VM."""

    version = scfg.Value('', help='RHEL version in X.Y form (e.g. 9.5).')
    playbook = scfg.Value(
        '', help='Ansible playbook to run once the VM is reachable.'
    )
    vm = scfg.Value(
        '',
        position=1,
        help='VM name (positional); generated as mcpvm-<adjective>-<noun> if omitted.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not str(args.version or '').strip():
            raise ValueError(
                'Usage: mcpvm setup --version=<RHEL-MAJOR>.<RHEL-MINOR> [--playbook=<path>] [name]'
            )
        orch = _make_orchestrator(args)
        result = orch.setup(
            str(args.version),
            name=str(args.vm or '').strip() or None,
            playbook=str(args.playbook or '').strip() or None,
        )
        print(f'VM ready: {result.name}')
        print(f'  backend:  {result.backend}')
        print(f'  ip:       {result.ip or "(unknown)"}')
        print(f'  hostname: {result.hostname}')
        for line in orch.backend.management_hints(result.name, orch.cfg.vm.user):
            print(f'  {line}')
        return 0


class ListCLI(_BaseCommand):
    """List mcpvm-managed VMs and whether they are running."""

    name_only = scfg.Value(
        False, isflag=True, help='Output only VM names, one per line.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        orch = _make_orchestrator(args)
        vms = orch.list_vms()
        if args.name_only:
            for vm in vms:
                print(vm.name)
            return 0
        if not vms:
            print('No mcpvm VMs found.')
            return 0
        width = max(len('NAME'), *(len(vm.name) for vm in vms))
        print(f'{"NAME":<{width}}  STATE')
        for vm in vms:
            print(f'{vm.name:<{width}}  {vm.state}')
        return 0


class StartCLI(_BaseCommand):
    """Start a stopped VM (no-op if already running)."""

    vm = scfg.Value('', position=1, help='VM name (positional).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        orch = _make_orchestrator(args)
        orch.start(_require_vm_arg(args.vm))
        return 0


class StopCLI(_BaseCommand):
    """Stop a running VM, forcing it off after a grace period."""

    vm = scfg.Value('', position=1, help='VM name (positional).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        orch = _make_orchestrator(args)
        orch.stop(_require_vm_arg(args.vm))
        return 0


class DeleteCLI(_BaseCommand):
    """Delete a VM with its disks and cloud-init ISO."""

    vm = scfg.Value('', position=1, help='VM name (positional).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        orch = _make_orchestrator(args)
        orch.delete(_require_vm_arg(args.vm))
        return 0


class MCPVMModalCLI(scfg.ModalCLI):
    """Short-lived RHEL test VMs on libvirt, UTM, or vfkit."""

    setup = SetupCLI
    list = ListCLI
    start = StartCLI
    stop = StopCLI
    delete = DeleteCLI
    config = ConfigModalCLI


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    _setup_logging(_count_verbose(argv), _cfg_verbosity(argv))

    try:
        rc = MCPVMModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.debug('Unhandled mcpvm error: {!r}', ex)
        sys.exit(1)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    fmt = '<level>{message}</level>'
    if effective_verbosity >= 2:
        fmt = (
            '<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | '
            '<level>{level: <8}</level> | '
            '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - '
            '<level>{message}</level>'
        )
    logger.add(sys.stderr, level=level, colorize=colorize, format=fmt)
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _normalize_argv(argv: list[str]) -> list[str]:
    """Normalize accepted hyphenated spellings to scriptconfig option names."""
    out: list[str] = []
    for item in argv:
        if item == '--name-only':
            item = '--name_only'
        out.append(item)
    if len(out) >= 1 and out[0] in {'ls', 'rm'}:
        out[0] = {'ls': 'list', 'rm': 'delete'}[out[0]]
    return out


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
