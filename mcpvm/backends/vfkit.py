"""macOS backend running vfkit (Virtualization.framework) as detached processes."""

from __future__ import annotations

import os
import secrets
import shutil
import signal
import subprocess
import time
from pathlib import Path

from loguru import logger

from ..cloudinit import remove_cloud_init_iso
from ..config import RHEL_DOWNLOAD_URL
from ..errors import BackendError, BaseImageMissingError, PrerequisiteError
from ..host import host_arch, macos_major_version, macos_version, require_commands
from ..naming import is_managed_name
from ..poll import is_ipv4, poll_until
from ..store import RecordStore, VMRecord
from ..util import CmdError, ensure_dir, expand, run_cmd, which
from .base import RUNNING, STOPPED, Backend, LifecycleResult, VMInfo

log = logger

DHCPD_LEASES = Path('/var/db/dhcpd_leases')
MIN_MACOS_MAJOR = 13


def random_mac() -> str:
    """A locally administered QEMU-range MAC, fixed per VM for lease lookup."""
    tail = secrets.token_hex(3)
    return '52:54:00:' + ':'.join(tail[i : i + 2] for i in range(0, 6, 2))


def normalize_mac(mac: str) -> str:
    """
    Normalise a MAC to 12 lowercase hex digits.

    The macOS lease file drops leading zeros from octets.

    Example:
        >>> from mcpvm.backends.vfkit import normalize_mac
        >>> normalize_mac('52:54:0:11:62:FE')
        '5254001162fe'
    """
    octets = [o for o in mac.strip().split(':') if o]
    try:
        return ''.join(f'{int(o, 16):02x}' for o in octets)
    except ValueError:
        return ''


def parse_dhcpd_leases(text: str) -> list[tuple[str, str]]:
    """
    Parse ``/var/db/dhcpd_leases`` into ``(normalized_mac, ip)`` pairs.

    Entries are brace-delimited blocks of ``key=value`` lines whose order
    varies; ``hw_address`` carries a ``<type>,`` prefix.
    """
    leases: list[tuple[str, str]] = []
    block: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip().rstrip(';')
        if line == '{':
            block = {}
            continue
        if line == '}':
            hw = block.get('hw_address', '')
            mac = normalize_mac(hw.split(',', 1)[-1]) if hw else ''
            ip = block.get('ip_address', '').strip()
            if mac and ip:
                leases.append((mac, ip))
            block = {}
            continue
        key, sep, value = line.partition('=')
        if sep:
            block[key.strip()] = value.strip()
    return leases


def lookup_lease(text: str, mac: str) -> str:
    want = normalize_mac(mac)
    for lease_mac, ip in parse_dhcpd_leases(text):
        if lease_mac == want and is_ipv4(ip):
            return ip
    return ''


class VfkitBackend(Backend):
    name = 'vfkit'

    def __init__(self, cfg, *, sleep=time.sleep, popen=subprocess.Popen):
        super().__init__(cfg)
        self._sleep = sleep
        self._popen = popen
        self._procs: dict[str, subprocess.Popen] = {}
        self.lease_file = DHCPD_LEASES
        self.records = RecordStore(self.state_root)

    # -- paths -----------------------------------------------------------

    @property
    def state_root(self) -> Path:
        return Path(expand(self.cfg.paths.state_dir)) / 'vfkit'

    @property
    def disks_dir(self) -> Path:
        return self.state_root / 'disks'

    @property
    def image_dir(self) -> Path:
        return Path(expand(self.cfg.paths.image_dir or self.cfg.paths.state_dir))

    def cloud_init_iso_path(self, name: str) -> Path:
        return (
            Path(expand(self.cfg.paths.state_dir))
            / 'disks'
            / f'{name}-cloudinit.iso'
        )

    def _log_path(self, name: str) -> Path:
        return self.state_root / f'{name}.log'

    def _serial_log_path(self, name: str) -> Path:
        return self.state_root / f'{name}-serial.log'

    # -- contract --------------------------------------------------------

    def check_prerequisites(self) -> None:
        log.info('Checking prerequisites for vfkit...')
        require_commands(
            ['vfkit', 'hdiutil'],
            hints={'vfkit': 'Install with: brew install vfkit'},
        )
        major = macos_major_version()
        if major is None or major < MIN_MACOS_MAJOR:
            raise PrerequisiteError(
                f'vfkit with EFI boot requires macOS {MIN_MACOS_MAJOR} or later '
                f'(current: {macos_version() or "unknown"})'
            )
        ensure_dir(self.state_root)
        ensure_dir(self.disks_dir)

    def validate_base_image(self, version: str) -> Path:
        arch = host_arch()
        raw = self.image_dir / f'rhel-{version}-{arch}.raw'
        qcow2 = self.image_dir / f'rhel-{version}-{arch}-kvm.qcow2'
        if raw.is_file():
            log.info('Base image found: {}', raw)
            return raw
        if not qcow2.is_file():
            raise BaseImageMissingError(
                f'Base image not found at {qcow2}\n'
                f'  Please download the RHEL {version} KVM image from:\n'
                f'  {RHEL_DOWNLOAD_URL}\n'
                f'  and place it at {qcow2}'
            )
        if which('qemu-img') is None:
            raise PrerequisiteError(
                'qemu-img is required to convert qcow2 to raw. '
                'Install with: brew install qemu'
            )
        log.info('Converting qcow2 to raw...')
        tmp = raw.with_name(raw.name + '.part')
        try:
            run_cmd(
                [
                    'qemu-img',
                    'convert',
                    '-f',
                    'qcow2',
                    '-O',
                    'raw',
                    str(qcow2),
                    str(tmp),
                ],
                check=True,
                capture=True,
            )
        except CmdError as ex:
            if tmp.exists():
                tmp.unlink()
            raise BackendError(
                f'Failed to convert {qcow2} to raw: {ex.detail}'
            ) from ex
        tmp.replace(raw)
        log.info('Base image ready: {}', raw)
        return raw

    def vm_exists(self, name: str) -> bool:
        return self.records.has(name)

    def _clone_disk(self, base_image: Path, disk: Path) -> None:
        log.info('Creating VM disk (APFS CoW clone)...')
        res = run_cmd(
            ['cp', '-c', str(base_image), str(disk)], check=False, capture=True
        )
        if res.code == 0:
            return
        log.info('CoW clone not available, copying base image...')
        try:
            shutil.copyfile(base_image, disk)
        except OSError as ex:
            if disk.exists():
                disk.unlink()
            raise BackendError(f'Failed to create VM disk {disk}: {ex}') from ex

    def vfkit_command(self, rec: VMRecord) -> list[str]:
        return [
            'vfkit',
            '--cpus',
            str(self.cfg.vm.cpus),
            '--memory',
            str(self.cfg.vm.memory_mb),
            '--bootloader',
            f'efi,variable-store={rec.efi_vars},create',
            '--device',
            f'virtio-blk,path={rec.disk}',
            '--device',
            f'virtio-blk,path={rec.iso}',
            '--device',
            f'virtio-net,nat,mac={rec.mac}',
            '--device',
            'virtio-rng',
            '--device',
            f'virtio-serial,logFilePath={self._serial_log_path(rec.name)}',
        ]

    def _launch(self, rec: VMRecord) -> int:
        cmd = self.vfkit_command(rec)
        log.debug('Launching detached: {}', ' '.join(cmd))
        ensure_dir(self.state_root)
        with open(self._log_path(rec.name), 'ab') as logf:
            try:
                proc = self._popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=logf,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as ex:
                raise BackendError(
                    f"Failed to launch vfkit for '{rec.name}': {ex}"
                ) from ex
        self._procs[rec.name] = proc
        self.records.write_pid(rec.name, proc.pid)
        log.info('vfkit started (PID {})', proc.pid)
        return proc.pid

    def create_vm(
        self, name: str, version: str, base_image: Path, iso: Path
    ) -> None:
        ensure_dir(self.disks_dir)
        disk = self.disks_dir / f'{name}.raw'
        if disk.exists():
            raise BackendError(
                f'Refusing to overwrite existing disk {disk}; remove it first.'
            )
        self._clone_disk(Path(base_image), disk)
        rec = VMRecord(
            name=name,
            backend=self.name,
            version=version,
            disk=str(disk),
            iso=str(iso),
            efi_vars=str(self.state_root / f'{name}-efi-vars'),
            mac=random_mac(),
        )
        log.info('Writing VM state...')
        self.records.save(rec)
        log.info('Starting vfkit...')
        try:
            self._launch(rec)
        except BackendError:
            self.records.remove(name)
            disk.unlink()
            log.warning('Removed disk and state for {} after failed launch', name)
            raise
        log.info('VM created successfully!')

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _live_pid(self, name: str) -> int | None:
        pid = self.records.read_pid(name)
        if pid is None:
            return None
        proc = self._procs.get(name)
        if proc is not None and proc.pid == pid:
            alive = proc.poll() is None
        else:
            alive = self._pid_alive(pid)
        if not alive:
            self.records.clear_pid(name)
            return None
        return pid

    def _lookup_ip(self, mac: str) -> str:
        try:
            text = self.lease_file.read_text(encoding='utf-8', errors='ignore')
        except OSError:
            return ''
        return lookup_lease(text, mac)

    def get_vm_ip(
        self, name: str, max_retries: int = 30, interval: float = 2
    ) -> str:
        rec = self.records.load(name)
        if rec is None:
            log.warning("No state found for VM '{}'", name)
            return ''
        log.info(
            'Waiting for VM to acquire IP address (checking {})...',
            self.lease_file,
        )
        ip = poll_until(
            lambda: self._lookup_ip(rec.mac),
            max_attempts=max_retries,
            interval=interval,
            desc=f'IP address of {name}',
            sleep=self._sleep,
        )
        if ip:
            log.info('VM acquired IP address: {}', ip)
            return ip
        log.warning('Timeout waiting for VM to acquire IP address')
        log.warning(
            'Check {} or connect via serial: {}',
            self.lease_file,
            self._serial_log_path(name),
        )
        return ''

    def list_vms(self) -> list[VMInfo]:
        return [
            VMInfo(name, RUNNING if self._live_pid(name) else STOPPED)
            for name in self.records.names()
            if is_managed_name(name)
        ]

    def start_vm(self, name: str) -> LifecycleResult:
        self.require_vm(name)
        pid = self._live_pid(name)
        if pid is not None:
            log.info("VM '{}' is already running (PID {})", name, pid)
            return LifecycleResult(name, RUNNING, False, 'already running')
        rec = self.records.load(name)
        log.info("Starting VM '{}'...", name)
        self._launch(rec)
        log.info("VM '{}' started", name)
        return LifecycleResult(name, RUNNING, True, 'started')

    def _signal(self, pid: int, sig: int) -> None:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass

    def stop_vm(self, name: str) -> LifecycleResult:
        self.require_vm(name)
        pid = self._live_pid(name)
        if pid is None:
            log.info("VM '{}' is already stopped", name)
            self.records.clear_pid(name)
            return LifecycleResult(name, STOPPED, False, 'already stopped')
        log.info("Stopping VM '{}'...", name)
        self._signal(pid, signal.SIGTERM)
        grace = max(1, int(self.cfg.poll.stop_grace_s))
        exited = poll_until(
            lambda: self._live_pid(name) is None,
            max_attempts=grace,
            interval=1,
            desc=f'exit of vfkit PID {pid}',
            sleep=self._sleep,
        )
        if not exited:
            log.warning(
                "VM '{}' did not exit within {}s; sending SIGKILL", name, grace
            )
            self._signal(pid, signal.SIGKILL)
        self.records.clear_pid(name)
        self._procs.pop(name, None)
        log.info("VM '{}' stopped", name)
        return LifecycleResult(name, STOPPED, True, 'stopped')

    def delete_vm(self, name: str) -> None:
        self.require_vm(name)
        rec = self.records.load(name)
        self.stop_vm(name)
        log.info("Deleting VM '{}'...", name)
        leftovers = [
            Path(rec.disk) if rec.disk else None,
            Path(rec.efi_vars) if rec.efi_vars else None,
            self._serial_log_path(name),
            self._log_path(name),
        ]
        for fpath in leftovers:
            if fpath is not None and fpath.exists():
                fpath.unlink()
        self.records.remove(name)
        remove_cloud_init_iso(self.cloud_init_iso_path(name))
        log.info("VM '{}' deleted successfully", name)

    def management_hints(self, name: str, user: str) -> list[str]:
        return super().management_hints(name, user) + [
            f'Serial:   tail -f {self._serial_log_path(name)}',
        ]
