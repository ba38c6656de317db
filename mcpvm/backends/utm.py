"""macOS backend driving UTM through AppleScript (``osascript``)."""

from __future__ import annotations

import time
from pathlib import Path

from loguru import logger

from ..cloudinit import remove_cloud_init_iso
from ..config import RHEL_DOWNLOAD_URL
from ..errors import BackendError, BaseImageMissingError, PrerequisiteError
from ..host import host_arch, require_commands
from ..naming import is_managed_name
from ..poll import is_ipv4, poll_until
from ..util import CmdError, CmdResult, expand, run_cmd
from .base import RUNNING, STOPPED, Backend, LifecycleResult, VMInfo

log = logger

UTM_APP = Path('/Applications/UTM.app')
UTM_URL = 'https://mac.getutm.app/'

# Every script takes its inputs from argv so names and paths are never
# interpolated into AppleScript source.
SCRIPT_LIST_NAMES = """\
tell application "UTM"
    set AppleScript's text item delimiters to linefeed
    return (name of every virtual machine) as text
end tell
"""

SCRIPT_STATUS = """\
on run argv
    tell application "UTM" to return (status of virtual machine named (item 1 of argv)) as text
end run
"""

SCRIPT_START = """\
on run argv
    tell application "UTM" to start virtual machine named (item 1 of argv)
end run
"""

SCRIPT_STOP_REQUEST = """\
on run argv
    tell application "UTM" to stop virtual machine named (item 1 of argv) by request
end run
"""

SCRIPT_STOP_FORCE = """\
on run argv
    tell application "UTM" to stop virtual machine named (item 1 of argv) by force
end run
"""

SCRIPT_DELETE = """\
on run argv
    tell application "UTM" to delete virtual machine named (item 1 of argv)
end run
"""

SCRIPT_QUERY_IP = """\
on run argv
    tell application "UTM"
        set addrs to query ip of (virtual machine named (item 1 of argv))
    end tell
    set AppleScript's text item delimiters to linefeed
    return addrs as text
end run
"""

SCRIPT_CREATE = """\
on run argv
    set vmName to item 1 of argv
    set diskFile to POSIX file (item 2 of argv)
    set isoFile to POSIX file (item 3 of argv)
    set memMb to (item 4 of argv) as integer
    set cpuCount to (item 5 of argv) as integer
    set archName to item 6 of argv
    tell application "UTM"
        set vm to make new virtual machine with properties {backend:qemu, configuration:{name:vmName, architecture:archName, memory:memMb, cpu cores:cpuCount, drives:{{removable:true, source:isoFile}, {source:diskFile}}, network interfaces:{{mode:shared}}}}
        start vm
    end tell
    return "Created and started " & vmName
end run
"""

# UTM status values with a live guest behind them.
_LIVE_STATES = {'started', 'starting', 'paused', 'pausing', 'resuming', 'stopping'}


def normalize_state(raw: str) -> str:
    return RUNNING if raw.strip().lower() in _LIVE_STATES else STOPPED


def parse_name_list(text: str) -> list[str]:
    """Split osascript list output (newline or comma separated)."""
    names: list[str] = []
    for chunk in text.replace(',', '\n').splitlines():
        chunk = chunk.strip()
        if chunk:
            names.append(chunk)
    return names


class UTMBackend(Backend):
    name = 'utm'

    def __init__(self, cfg, *, sleep=time.sleep):
        super().__init__(cfg)
        self._sleep = sleep

    def _osascript(
        self, script: str, *args: str, check: bool = False
    ) -> CmdResult:
        return run_cmd(
            ['osascript', '-', *args],
            input_text=script,
            check=check,
            capture=True,
        )

    @property
    def image_dir(self) -> Path:
        return Path(expand(self.cfg.paths.image_dir or self.cfg.paths.state_dir))

    def base_image_path(self, version: str) -> Path:
        return self.image_dir / f'rhel-{version}-{host_arch()}-kvm.qcow2'

    def cloud_init_iso_path(self, name: str) -> Path:
        return (
            Path(expand(self.cfg.paths.state_dir))
            / 'disks'
            / f'{name}-cloudinit.iso'
        )

    def check_prerequisites(self) -> None:
        log.info('Checking prerequisites for UTM...')
        require_commands(['osascript', 'hdiutil'])
        if not UTM_APP.is_dir():
            raise PrerequisiteError(
                f'UTM.app is required but not found at {UTM_APP}\n'
                f'  Please install UTM from: {UTM_URL}'
            )

    def validate_base_image(self, version: str) -> Path:
        base = self.base_image_path(version)
        if not base.is_file():
            raise BaseImageMissingError(
                f'Base image not found at {base}\n'
                f'  Please download the RHEL {version} ARM64 image from:\n'
                f'  {RHEL_DOWNLOAD_URL}\n'
                f'  and place it at {base}'
            )
        log.info('Base image found: {}', base)
        return base

    def _all_names(self) -> list[str]:
        res = self._osascript(SCRIPT_LIST_NAMES)
        if res.code != 0:
            raise BackendError(
                f'Failed to query UTM virtual machines: {res.stderr.strip()}'
            )
        return parse_name_list(res.stdout)

    def vm_exists(self, name: str) -> bool:
        return name in self._all_names()

    def status(self, name: str) -> str:
        return self._osascript(SCRIPT_STATUS, name).stdout.strip()

    def create_vm(
        self, name: str, version: str, base_image: Path, iso: Path
    ) -> None:
        # UTM copies the base image into its own bundle, so the base stays intact.
        log.info('Creating VM in UTM (base image is copied into the bundle)...')
        try:
            res = self._osascript(
                SCRIPT_CREATE,
                name,
                str(base_image),
                str(iso),
                str(self.cfg.vm.memory_mb),
                str(self.cfg.vm.cpus),
                host_arch(),
                check=True,
            )
        except CmdError as ex:
            raise BackendError(f'Failed to create VM: {ex.detail}') from ex
        log.info('VM created successfully!')
        if res.stdout.strip():
            log.info('{}', res.stdout.strip())

    def _lookup_ip(self, name: str) -> str:
        res = self._osascript(SCRIPT_QUERY_IP, name)
        if res.code != 0 or res.stdout.startswith('Error:'):
            return ''
        for cand in parse_name_list(res.stdout):
            if is_ipv4(cand):
                return cand
        return ''

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
        log.warning(
            'You may need to check the VM in UTM.app to see its network status'
        )
        return ''

    def list_vms(self) -> list[VMInfo]:
        return [
            VMInfo(name, normalize_state(self.status(name)))
            for name in self._all_names()
            if is_managed_name(name)
        ]

    def start_vm(self, name: str) -> LifecycleResult:
        self.require_vm(name)
        if normalize_state(self.status(name)) == RUNNING:
            log.info("VM '{}' is already running", name)
            return LifecycleResult(name, RUNNING, False, 'already running')
        log.info("Starting VM '{}'...", name)
        try:
            self._osascript(SCRIPT_START, name, check=True)
        except CmdError as ex:
            raise BackendError(
                f"Failed to start VM '{name}': {ex.detail}"
            ) from ex
        return LifecycleResult(name, RUNNING, True, 'started')

    def _wait_stopped(self, name: str, attempts: int) -> bool:
        return bool(
            poll_until(
                lambda: self.status(name).lower() == 'stopped',
                max_attempts=attempts,
                interval=1,
                desc=f'shutdown of {name}',
                sleep=self._sleep,
            )
        )

    def _force_stop(self, name: str) -> None:
        try:
            self._osascript(SCRIPT_STOP_FORCE, name, check=True)
        except CmdError as ex:
            raise BackendError(
                f"Failed to stop VM '{name}': {ex.detail}"
            ) from ex

    def stop_vm(self, name: str) -> LifecycleResult:
        self.require_vm(name)
        if normalize_state(self.status(name)) == STOPPED:
            log.info("VM '{}' is already stopped", name)
            return LifecycleResult(name, STOPPED, False, 'already stopped')
        log.info("Stopping VM '{}'...", name)
        res = self._osascript(SCRIPT_STOP_REQUEST, name)
        grace = max(1, int(self.cfg.poll.stop_grace_s))
        if res.code != 0 or not self._wait_stopped(name, grace):
            log.warning(
                "VM '{}' did not shut down within {}s; forcing stop", name, grace
            )
            self._force_stop(name)
        log.info("VM '{}' stopped", name)
        return LifecycleResult(name, STOPPED, True, 'stopped')

    def delete_vm(self, name: str) -> None:
        self.require_vm(name)
        if normalize_state(self.status(name)) == RUNNING:
            log.info("Stopping VM '{}'...", name)
            self._force_stop(name)
            self._wait_stopped(name, 5)
        log.info("Deleting VM '{}'...", name)
        try:
            self._osascript(SCRIPT_DELETE, name, check=True)
        except CmdError as ex:
            raise BackendError(
                f"Failed to delete VM '{name}': {ex.detail}"
            ) from ex
        remove_cloud_init_iso(self.cloud_init_iso_path(name))
        log.info("VM '{}' deleted successfully", name)

    def management_hints(self, name: str, user: str) -> list[str]:
        return super().management_hints(name, user) + [
            'Console:  open UTM.app and select the VM window',
        ]
