"""Backend-agnostic VM lifecycle workflows: setup, list, start, stop, delete."""

from __future__ import annotations

import random
import time
from pathlib import Path
from typing import Callable

from loguru import logger

from .backends.base import Backend, LifecycleResult, VMInfo
from .cloudinit import ProvisioningInputs, build_cloud_init_iso
from .config import MCPVMConfig, load_credentials
from .errors import ConfigError, VMExistsError
from .guest import (
    mdns_hostname,
    register_host_keys,
    run_playbook,
    wait_for_hostname,
    wait_for_ssh,
)
from .host import read_ssh_pubkey, require_commands
from .naming import generate_vm_name, validate_version, validate_vm_name
from .results import SetupResult
from .store import vm_lock
from .util import expand

log = logger


class Orchestrator:
    """
    Drive one backend through the VM lifecycle.

    The backend is chosen once by the caller; nothing in here branches on
    which backend it is.

    Example:
        >>> from mcpvm.orchestrator import Orchestrator
        >>> from mcpvm.config import MCPVMConfig
        >>> from mcpvm.backends import LibvirtBackend
        >>> cfg = MCPVMConfig()
        >>> orch = Orchestrator(LibvirtBackend(cfg), cfg)
        >>> orch.backend.name
        'libvirt'
    """

    def __init__(
        self,
        backend: Backend,
        cfg: MCPVMConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ):
        self.backend = backend
        self.cfg = cfg
        self._sleep = sleep
        self._rng = rng

    def _lock(self, name: str):
        return vm_lock(expand(self.cfg.paths.state_dir), name)

    def _warn(self, result: SetupResult, msg: str) -> None:
        log.warning(msg)
        result.warnings.append(msg)

    def setup(
        self,
        version: str,
        name: str | None = None,
        playbook: str | Path | None = None,
    ) -> SetupResult:
        version = validate_version(version)
        if name:
            name = validate_vm_name(name)
        playbook_path = None
        if playbook:
            playbook_path = Path(expand(str(playbook)))
            if not playbook_path.is_file():
                raise ConfigError(f'Playbook not found: {playbook_path}')

        self.backend.check_prerequisites()
        if playbook_path is not None:
            require_commands(['ansible-playbook'])
        require_commands(['ssh-keyscan', 'ssh-keygen'])

        creds = load_credentials(self.cfg.paths.credentials_file)
        ssh_key = read_ssh_pubkey(self.cfg.paths.ssh_dir)
        base_image = self.backend.validate_base_image(version)

        if name:
            if self.backend.vm_exists(name):
                raise VMExistsError(
                    f"VM '{name}' already exists. Delete it first with: "
                    f'mcpvm delete {name}'
                )
        else:
            name = generate_vm_name(
                self.backend.vm_exists,
                rng=self._rng,
                max_attempts=self.cfg.poll.name_attempts,
            )
            log.info('Generated VM name: {}', name)

        log.info(
            'Setting up VM: {} with RHEL {} on {}',
            name,
            version,
            self.backend.name,
        )
        result = SetupResult(
            name=name,
            version=version,
            backend=self.backend.name,
            hostname=mdns_hostname(name),
        )
        user = self.cfg.vm.user
        poll = self.cfg.poll
        with self._lock(name):
            # Re-check under the lock; a concurrent run may have won the name.
            if self.backend.vm_exists(name):
                raise VMExistsError(f"VM '{name}' already exists")
            iso = build_cloud_init_iso(
                ProvisioningInputs(
                    hostname=name,
                    username=user,
                    ssh_key=ssh_key,
                    org_id=creds.org_id,
                    activation_key=creds.activation_key,
                ),
                self.backend.cloud_init_iso_path(name),
            )
            self.backend.create_vm(name, version, base_image, iso)

            result.ip = self.backend.get_vm_ip(
                name, max_retries=poll.ip_attempts, interval=poll.ip_interval
            )
            if result.ip:
                result.ssh_ready = wait_for_ssh(
                    result.ip,
                    max_attempts=poll.ssh_attempts,
                    interval=poll.ssh_interval,
                    sleep=self._sleep,
                )
                if result.ssh_ready:
                    result.host_keys_added = register_host_keys(
                        result.ip,
                        result.hostname,
                        known_hosts=self.cfg.paths.known_hosts,
                    )
                if result.host_keys_added:
                    log.info(
                        'SSH host keys configured - you can connect immediately'
                    )
                else:
                    self._warn(
                        result,
                        'Could not automatically configure SSH host keys; '
                        'expect a host key prompt on first connection',
                    )
            else:
                self._warn(
                    result,
                    'Could not determine VM IP address; wait for the VM to '
                    'boot and configure SSH manually',
                )

            if playbook_path is not None:
                self._run_post_provisioning(result, playbook_path, user)
        return result

    def _run_post_provisioning(
        self, result: SetupResult, playbook: Path, user: str
    ) -> None:
        poll = self.cfg.poll
        resolved = wait_for_hostname(
            result.hostname,
            max_attempts=poll.hostname_attempts,
            interval=poll.hostname_interval,
            sleep=self._sleep,
        )
        result.hostname_resolved = bool(resolved)
        if resolved:
            target = result.hostname
        elif result.ip:
            target = result.ip
            self._warn(
                result,
                f'{result.hostname} did not resolve; running playbook against {result.ip}',
            )
        else:
            self._warn(
                result,
                f'Skipping playbook {playbook}: {result.name} is not reachable',
            )
            return
        run_playbook(playbook, target, user)
        result.playbook_ran = True

    def list_vms(self) -> list[VMInfo]:
        return sorted(self.backend.list_vms(), key=lambda v: v.name)

    def start(self, name: str) -> LifecycleResult:
        name = validate_vm_name(name)
        with self._lock(name):
            self.backend.require_vm(name)
            return self.backend.start_vm(name)

    def stop(self, name: str) -> LifecycleResult:
        name = validate_vm_name(name)
        with self._lock(name):
            self.backend.require_vm(name)
            return self.backend.stop_vm(name)

    def delete(self, name: str) -> None:
        name = validate_vm_name(name)
        with self._lock(name):
            self.backend.require_vm(name)
            self.backend.delete_vm(name)
