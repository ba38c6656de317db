"""Backend driver contract shared by every virtualization technology."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from pathlib import Path

from ..config import MCPVMConfig
from ..errors import VMNotFoundError

RUNNING = 'running'
STOPPED = 'stopped'


@dataclass(frozen=True)
class VMInfo:
    name: str
    state: str


@dataclass(frozen=True)
class LifecycleResult:
    """Outcome of an idempotent start/stop; ``changed`` is False for no-ops."""

    name: str
    state: str
    changed: bool
    message: str = ''


class Backend(abc.ABC):
    """
    One virtualization technology behind a uniform lifecycle interface.

    Implementations own every mechanism-specific detail and translate tool
    failures into :mod:`mcpvm.errors` types so the orchestrator never needs to
    know which backend it is driving.
    """

    name: str = ''

    def __init__(self, cfg: MCPVMConfig):
        self.cfg = cfg

    @abc.abstractmethod
    def check_prerequisites(self) -> None:
        ...

    @abc.abstractmethod
    def validate_base_image(self, version: str) -> Path:
        ...

    @abc.abstractmethod
    def vm_exists(self, name: str) -> bool:
        ...

    @abc.abstractmethod
    def cloud_init_iso_path(self, name: str) -> Path:
        ...

    @abc.abstractmethod
    def create_vm(
        self, name: str, version: str, base_image: Path, iso: Path
    ) -> None:
        ...

    @abc.abstractmethod
    def get_vm_ip(
        self, name: str, max_retries: int = 30, interval: float = 2
    ) -> str:
        ...

    @abc.abstractmethod
    def list_vms(self) -> list[VMInfo]:
        ...

    @abc.abstractmethod
    def start_vm(self, name: str) -> LifecycleResult:
        ...

    @abc.abstractmethod
    def stop_vm(self, name: str) -> LifecycleResult:
        ...

    @abc.abstractmethod
    def delete_vm(self, name: str) -> None:
        ...

    def management_hints(self, name: str, user: str) -> list[str]:
        return [
            f'Connect:  ssh {user}@{name}.local',
            f'Stop:     mcpvm stop {name}',
            f'Start:    mcpvm start {name}',
            f'Delete:   mcpvm delete {name}',
        ]

    def require_vm(self, name: str) -> None:
        if not self.vm_exists(name):
            raise VMNotFoundError(f"VM '{name}' does not exist")
