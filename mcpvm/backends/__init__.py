"""Backend drivers and one-time selection for the running host."""

from __future__ import annotations

from loguru import logger

from ..config import MCPVMConfig
from ..errors import PrerequisiteError
from ..host import host_system
from ..util import which
from .base import RUNNING, STOPPED, Backend, LifecycleResult, VMInfo
from .libvirt import LibvirtBackend
from .utm import UTMBackend
from .vfkit import VfkitBackend

log = logger

BACKENDS: dict[str, type[Backend]] = {
    'libvirt': LibvirtBackend,
    'utm': UTMBackend,
    'vfkit': VfkitBackend,
}


def default_backend_name(system: str | None = None) -> str:
    system = system or host_system()
    if system == 'Linux':
        return 'libvirt'
    if system == 'Darwin':
        return 'vfkit' if which('vfkit') is not None else 'utm'
    raise PrerequisiteError(f'Unsupported platform: {system}')


def select_backend(cfg: MCPVMConfig, *, system: str | None = None) -> Backend:
    """Instantiate the configured backend, or the platform default."""
    name = (cfg.backend or '').strip().lower() or default_backend_name(system)
    try:
        cls = BACKENDS[name]
    except KeyError:
        raise PrerequisiteError(
            f'Unknown backend {name!r}; choose one of: {", ".join(sorted(BACKENDS))}'
        ) from None
    log.debug('Selected backend {}', name)
    return cls(cfg)


__all__ = [
    'BACKENDS',
    'Backend',
    'LibvirtBackend',
    'LifecycleResult',
    'RUNNING',
    'STOPPED',
    'UTMBackend',
    'VMInfo',
    'VfkitBackend',
    'default_backend_name',
    'select_backend',
]
