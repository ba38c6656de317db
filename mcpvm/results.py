"""Result dataclasses returned by orchestration workflows."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class SetupResult:
    name: str
    version: str
    backend: str
    ip: str = ''
    hostname: str = ''
    ssh_ready: bool = False
    host_keys_added: int = 0
    hostname_resolved: bool = False
    playbook_ran: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def reachable(self) -> bool:
        return bool(self.ip) and self.ssh_ready
