"""Cloud-init NoCloud payload: descriptor rendering and ``cidata`` ISO packaging."""

from __future__ import annotations

import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .errors import ProvisioningError
from .host import host_system
from .util import CmdError, ensure_dir, run_cmd, which

log = logger

# cloud-init's NoCloud datasource only recognises volumes with this label.
VOLUME_LABEL = 'cidata'

USER_DATA_TEMPLATE = """#cloud-config
hostname: __HOSTNAME__
fqdn: __HOSTNAME__.local

rh_subscription:
  activation-key: __ACTIVATION_KEY__
  org: "__ORG_ID__"

users:
  - name: __USERNAME__
    groups: wheel
    sudo: ALL=(ALL) NOPASSWD:ALL
    shell: /bin/bash
    ssh_authorized_keys:
      - __SSH_KEY__

packages:
  - avahi

runcmd:
  # mDNS so the guest answers as <hostname>.local
  - systemctl enable avahi-daemon
  - systemctl start avahi-daemon
  # SELinux relabel on next boot
  - touch /.autorelabel
"""

_PLACEHOLDER_RE = re.compile(r'__[A-Z][A-Z_]*__')

# Linux tools in preference order; all accept mkisofs-style flags.
_LINUX_ISO_TOOLS = [
    ['genisoimage'],
    ['xorriso', '-as', 'mkisofs'],
    ['mkisofs'],
]


@dataclass(frozen=True)
class ProvisioningInputs:
    hostname: str
    username: str
    ssh_key: str
    org_id: str
    activation_key: str


def render_meta_data(hostname: str) -> str:
    return f'instance-id: {hostname}\nlocal-hostname: {hostname}\n'


def render_user_data(inputs: ProvisioningInputs) -> str:
    for field_name in ('hostname', 'username', 'ssh_key'):
        value = getattr(inputs, field_name)
        if not value or '\n' in value:
            raise ProvisioningError(
                f'cloud-init {field_name} must be a single non-empty line'
            )
    text = USER_DATA_TEMPLATE
    for token, value in (
        ('__HOSTNAME__', inputs.hostname),
        ('__ORG_ID__', inputs.org_id),
        ('__ACTIVATION_KEY__', inputs.activation_key),
        ('__USERNAME__', inputs.username),
        ('__SSH_KEY__', inputs.ssh_key.strip()),
    ):
        text = text.replace(token, value)
    leftover = sorted(set(_PLACEHOLDER_RE.findall(text)))
    if leftover:
        raise ProvisioningError(
            f'Unsubstituted cloud-init placeholders: {", ".join(leftover)}'
        )
    return text


def write_cloud_init_files(
    inputs: ProvisioningInputs, directory: Path
) -> dict[str, Path]:
    ensure_dir(directory)
    meta_data = directory / 'meta-data'
    user_data = directory / 'user-data'
    meta_data.write_text(render_meta_data(inputs.hostname), encoding='utf-8')
    user_data.write_text(render_user_data(inputs), encoding='utf-8')
    return {'meta_data': meta_data, 'user_data': user_data}


def iso_command(
    staging_dir: Path, output_iso: Path, *, system: str | None = None
) -> list[str]:
    """Build the ISO-packaging command for this host."""
    system = system or host_system()
    if system == 'Darwin':
        return [
            'hdiutil',
            'makehybrid',
            '-o',
            str(output_iso),
            '-iso',
            '-joliet',
            '-default-volume-name',
            VOLUME_LABEL,
            str(staging_dir),
        ]
    if system != 'Linux':
        raise ProvisioningError(
            f'Unsupported platform for ISO creation: {system}'
        )
    for tool in _LINUX_ISO_TOOLS:
        if which(tool[0]) is not None:
            return [
                *tool,
                '-output',
                str(output_iso),
                '-volid',
                VOLUME_LABEL,
                '-joliet',
                '-rock',
                str(staging_dir),
            ]
    raise ProvisioningError(
        'genisoimage (or xorriso) is required but not installed. '
        'Install with: sudo dnf install genisoimage'
    )


def build_cloud_init_iso(
    inputs: ProvisioningInputs,
    output_iso: Path,
    *,
    system: str | None = None,
) -> Path:
    log.debug('Building cloud-init ISO for {}', inputs.hostname)
    output_iso = Path(output_iso)
    ensure_dir(output_iso.parent)
    if output_iso.exists():
        # hdiutil refuses to overwrite and a stale payload must not be reused.
        output_iso.unlink()
    with tempfile.TemporaryDirectory(prefix='mcpvm-cidata-') as tmp:
        staging = Path(tmp)
        write_cloud_init_files(inputs, staging)
        cmd = iso_command(staging, output_iso, system=system)
        try:
            run_cmd(cmd, check=True, capture=True)
        except CmdError as ex:
            raise ProvisioningError(
                f'Failed to create cloud-init ISO at {output_iso}: {ex.detail}'
            ) from ex
    if not output_iso.exists():
        raise ProvisioningError(
            f'Failed to create cloud-init ISO at {output_iso}'
        )
    log.info('Created cloud-init ISO: {}', output_iso)
    return output_iso


def remove_cloud_init_iso(path: Path) -> bool:
    path = Path(path)
    if path.is_file():
        path.unlink()
        log.info('Removed cloud-init ISO {}', path)
        return True
    return False
