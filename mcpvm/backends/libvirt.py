"""Linux backend driving libvirt/KVM through ``virsh``, ``virt-install`` and ``qemu-img``."""

from __future__ import annotations

import time
from pathlib import Path

from loguru import logger

from ..cloudinit import remove_cloud_init_iso
from ..config import RHEL_DOWNLOAD_URL
from ..errors import BackendError, BaseImageMissingError, PrerequisiteError
from ..host import host_arch, missing_commands, require_commands
from ..naming import is_managed_name
from ..poll import is_ipv4, poll_until
from ..runtime import virsh_system_cmd, virt_install_cmd
from ..util import CmdError, ensure_dir, expand, run_cmd, which
from .base import RUNNING, STOPPED, Backend, LifecycleResult, VMInfo

log = logger

REQUIRED_CMDS = ['virsh', 'virt-install', 'qemu-img']
ISO_TOOLS = ['genisoimage', 'xorriso', 'mkisofs']
DEFAULT_IMAGE_DIR = '~/.local/share/rhelmcp'

# libvirt domain states that still have a live guest behind them.
_LIVE_STATES = {'running', 'idle', 'paused', 'in shutdown', 'blocked'}


def normalize_state(raw: str) -> str:
    return RUNNING if raw.strip().lower() in _LIVE_STATES else STOPPED


def parse_domain_table(text: str) -> list[tuple[str, str]]:
    """
    Parse ``virsh list --all`` output into ``(name, raw_state)`` pairs.

    Example:
        >>> from mcpvm.backends.libvirt import parse_domain_table
        >>> text = ''' Id   Name      State
        ... --------------------------
        ...  1    mcpvm-a   running
        ...  -    mcpvm-b   shut off
        ... '''
        >>> parse_domain_table(text)
        [('mcpvm-a', 'running'), ('mcpvm-b', 'shut off')]
    """
    rows: list[tuple[str, str]] = []
    seen_rule = False
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if set(stripped) <= {'-'}:
            seen_rule = True
            continue
        if not seen_rule:
            continue
        parts = stripped.split(None, 2)
        if len(parts) < 3:
            continue
        rows.append((parts[1], parts[2].strip()))
    return rows


def _first_ipv4_cidr(parts: list[str]) -> str:
    for part in parts:
        if '/' in part and '.' in part:
            cand = part.split('/')[0]
            if is_ipv4(cand):
                return cand
    return ''


def parse_domifaddr(text: str) -> str:
    for line in text.splitlines():
        if 'ipv4' in line.lower():
            ip = _first_ipv4_cidr(line.split())
            if ip:
                return ip
    return ''


def parse_dhcp_leases(text: str, mac: str) -> str:
    mac = mac.lower()
    for line in text.splitlines():
        if mac and mac in line.lower():
            ip = _first_ipv4_cidr(line.split())
            if ip:
                return ip
    return ''


def parse_osinfo_short_ids(text: str) -> set[str]:
    ids: set[str] = set()
    seen_rule = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and set(stripped) <= {'-'}:
            seen_rule = True
            continue
        if seen_rule and stripped:
            ids.add(stripped.split()[0])
    return ids


def parse_domiflist_mac(text: str) -> str:
    for line in text.splitlines():
        low = line.lower()
        if 'network' in low and 'interface' not in low and '---' not in line:
            parts = line.split()
            if parts:
                return parts[-1].strip()
    return ''


class LibvirtBackend(Backend):
    name = 'libvirt'

    def __init__(self, cfg, *, sleep=time.sleep):
        super().__init__(cfg)
        self._sleep = sleep

    # -- paths -----------------------------------------------------------

    @property
    def image_dir(self) -> Path:
        return Path(expand(self.cfg.paths.image_dir or DEFAULT_IMAGE_DIR))

    @property
    def disk_dir(self) -> Path:
        return Path(expand(self.cfg.paths.libvirt_image_dir))

    def base_image_path(self, version: str) -> Path:
        return self.image_dir / f'rhel-{version}-{host_arch()}-kvm.qcow2'

    def disk_path(self, name: str) -> Path:
        return self.disk_dir / f'{name}.qcow2'

    def cloud_init_iso_path(self, name: str) -> Path:
        return self.disk_dir / f'{name}-cloudinit.iso'

    # -- contract --------------------------------------------------------

    def check_prerequisites(self) -> None:
        log.info('Checking prerequisites for libvirt/KVM...')
        require_commands(REQUIRED_CMDS)
        if len(missing_commands(ISO_TOOLS)) == len(ISO_TOOLS):
            raise PrerequisiteError(
                'genisoimage or xorriso is required but not installed\n'
                '  Install with: sudo dnf install genisoimage'
            )
        log.info('Checking libvirtd connection...')
        res = run_cmd(virsh_system_cmd('list'), check=False, capture=True)
        if res.code != 0:
            raise PrerequisiteError(
                'Cannot connect to libvirtd. Please ensure libvirtd is running '
                'and you have permission to connect.\n'
                '  Try: virsh -c qemu:///system list'
            )

    def validate_base_image(self, version: str) -> Path:
        base = self.base_image_path(version)
        if not base.is_file():
            raise BaseImageMissingError(
                f'Base image not found at {base}\n'
                f'  Please download the RHEL {version} KVM image from:\n'
                f'  {RHEL_DOWNLOAD_URL}\n'
                f'  and place it at {base}'
            )
        log.info('Base image found: {}', base)
        return base

    def vm_exists(self, name: str) -> bool:
        res = run_cmd(
            virsh_system_cmd('dominfo', name), check=False, capture=True
        )
        return res.code == 0

    def _os_variant(self, version: str) -> str:
        major = version.split('.', 1)[0]
        available: set[str] = set()
        if which('osinfo-query') is not None:
            res = run_cmd(
                ['osinfo-query', 'os', '--fields', 'short-id'],
                check=False,
                capture=True,
            )
            available = parse_osinfo_short_ids(res.stdout)
        for cand in (f'rhel{version}', f'rhel{major}-unknown', 'rhel-unknown'):
            if cand in available:
                log.info('Using OS variant: {}', cand)
                return cand
        log.warning(
            'Using OS variant: rhel-unknown (rhel{} not found in osinfo database)',
            version,
        )
        return 'rhel-unknown'

    def create_vm(
        self, name: str, version: str, base_image: Path, iso: Path
    ) -> None:
        disk = self.disk_path(name)
        ensure_dir(disk.parent)
        if disk.exists():
            raise BackendError(
                f'Refusing to overwrite existing disk {disk}; remove it first.'
            )
        log.info('Creating VM disk with backing file...')
        try:
            run_cmd(
                [
                    'qemu-img',
                    'create',
                    '-f',
                    'qcow2',
                    '-F',
                    'qcow2',
                    '-b',
                    str(base_image),
                    str(disk),
                    f'{self.cfg.vm.disk_gb}G',
                ],
                check=True,
                capture=True,
            )
        except CmdError as ex:
            raise BackendError(
                f'Failed to create VM disk {disk}: {ex.detail}'
            ) from ex

        os_variant = self._os_variant(version)
        log.info('Creating VM definition...')
        cmd = virt_install_cmd(
            '--name',
            name,
            '--memory',
            str(self.cfg.vm.memory_mb),
            '--vcpus',
            str(self.cfg.vm.cpus),
            '--disk',
            f'path={disk},format=qcow2',
            '--disk',
            f'path={iso},device=cdrom',
            '--network',
            f'network={self.cfg.vm.network}',
            '--os-variant',
            os_variant,
            '--import',
            '--noautoconsole',
        )
        try:
            run_cmd(cmd, check=True, capture=True)
        except CmdError as ex:
            if disk.exists():
                disk.unlink()
                log.warning('Removed disk {} after failed VM definition', disk)
            raise BackendError(
                f"Failed to define VM '{name}': {ex.detail}"
            ) from ex
        log.info('VM created successfully!')
        # virt-install --import normally boots the domain already.
        run_cmd(virsh_system_cmd('start', name), check=False, capture=True)

    def domstate(self, name: str) -> str:
        return run_cmd(
            virsh_system_cmd('domstate', name), check=False, capture=True
        ).stdout.strip()

    def _mac_for_vm(self, name: str) -> str:
        res = run_cmd(
            virsh_system_cmd('domiflist', name), check=False, capture=True
        )
        return parse_domiflist_mac(res.stdout)

    def _lookup_ip(self, name: str) -> str:
        res = run_cmd(
            virsh_system_cmd('domifaddr', name, '--source', 'lease'),
            check=False,
            capture=True,
        )
        ip = parse_domifaddr(res.stdout)
        if ip:
            return ip
        mac = self._mac_for_vm(name)
        if not mac:
            return ''
        leases = run_cmd(
            virsh_system_cmd('net-dhcp-leases', self.cfg.vm.network),
            check=False,
            capture=True,
        )
        return parse_dhcp_leases(leases.stdout, mac)

    def get_vm_ip(
        self, name: str, max_retries: int = 30, interval: float = 2
    ) -> str:
        log.info('Waiting for VM to acquire IP address...')
        ip = poll_until(
            lambda: self._lookup_ip(name),
            max_attempts=max_retries,
            interval=interval,
            desc=f'IP address of {name}',
            sleep=self._sleep,
        )
        if ip:
            log.info('VM acquired IP address: {}', ip)
            return ip
        log.warning('Timeout waiting for VM to acquire IP address')
        return ''

    def list_vms(self) -> list[VMInfo]:
        res = run_cmd(
            virsh_system_cmd('list', '--all'), check=False, capture=True
        )
        if res.code != 0:
            raise BackendError(
                f'Failed to list libvirt domains: {res.stderr.strip()}'
            )
        return [
            VMInfo(name, normalize_state(state))
            for name, state in parse_domain_table(res.stdout)
            if is_managed_name(name)
        ]

    def start_vm(self, name: str) -> LifecycleResult:
        self.require_vm(name)
        if normalize_state(self.domstate(name)) == RUNNING:
            log.info("VM '{}' is already running", name)
            return LifecycleResult(name, RUNNING, False, 'already running')
        log.info("Starting VM '{}'...", name)
        try:
            run_cmd(virsh_system_cmd('start', name), check=True, capture=True)
        except CmdError as ex:
            raise BackendError(
                f"Failed to start VM '{name}': {ex.detail}"
            ) from ex
        return LifecycleResult(name, RUNNING, True, 'started')

    def stop_vm(self, name: str) -> LifecycleResult:
        self.require_vm(name)
        if normalize_state(self.domstate(name)) == STOPPED:
            log.info("VM '{}' is already stopped", name)
            return LifecycleResult(name, STOPPED, False, 'already stopped')
        log.info("Stopping VM '{}'...", name)
        res = run_cmd(
            virsh_system_cmd('shutdown', name), check=False, capture=True
        )
        if res.code != 0:
            log.warning(
                'Graceful shutdown request failed: {}', res.stderr.strip()
            )
        grace = max(1, int(self.cfg.poll.stop_grace_s))
        stopped = poll_until(
            lambda: normalize_state(self.domstate(name)) == STOPPED,
            max_attempts=grace,
            interval=1,
            desc=f'shutdown of {name}',
            sleep=self._sleep,
        )
        if not stopped:
            log.warning(
                "VM '{}' did not shut down within {}s; forcing power off",
                name,
                grace,
            )
            try:
                run_cmd(
                    virsh_system_cmd('destroy', name), check=True, capture=True
                )
            except CmdError as ex:
                raise BackendError(
                    f"Failed to stop VM '{name}': {ex.detail}"
                ) from ex
        log.info("VM '{}' stopped", name)
        return LifecycleResult(name, STOPPED, True, 'stopped')

    def _undefine(self, name: str) -> None:
        # Older libvirt rejects --nvram for BIOS guests.
        attempts = [
            ['undefine', name, '--remove-all-storage', '--nvram'],
            ['undefine', name, '--remove-all-storage'],
            ['undefine', name],
        ]
        errs: list[str] = []
        for args in attempts:
            res = run_cmd(virsh_system_cmd(*args), check=False, capture=True)
            if res.code != 0:
                msg = (res.stderr or res.stdout or '').strip()
                if msg:
                    errs.append(msg)
            if not self.vm_exists(name):
                return
        detail = '\n'.join(errs[-3:]) if errs else '(no details)'
        raise BackendError(
            f"Failed to undefine VM '{name}'; domain is still present.\n{detail}"
        )

    def delete_vm(self, name: str) -> None:
        self.require_vm(name)
        if normalize_state(self.domstate(name)) == RUNNING:
            log.info("Stopping VM '{}'...", name)
            run_cmd(virsh_system_cmd('destroy', name), check=False, capture=True)
        log.info("Deleting VM '{}'...", name)
        self._undefine(name)
        disk = self.disk_path(name)
        if disk.exists():
            disk.unlink()
            log.info('Removed {}', disk)
        remove_cloud_init_iso(self.cloud_init_iso_path(name))
        log.info("VM '{}' deleted successfully", name)

    def management_hints(self, name: str, user: str) -> list[str]:
        return super().management_hints(name, user) + [
            f'Console:  virsh -c qemu:///system console {name}',
        ]
