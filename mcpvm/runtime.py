"""Runtime helpers for constructing virsh and SSH command arguments."""

from __future__ import annotations

LIBVIRT_URI = 'qemu:///system'


def virsh_system_cmd(*args: str) -> list[str]:
    return ['virsh', '-c', LIBVIRT_URI, *args]


def virt_install_cmd(*args: str) -> list[str]:
    return ['virt-install', '--connect', LIBVIRT_URI, *args]


def keyscan_cmd(host: str, *, timeout: int = 3) -> list[str]:
    return ['ssh-keyscan', '-T', str(timeout), host]


def ssh_base_args(
    *,
    strict_host_key_checking: str = 'accept-new',
    connect_timeout: int | None = None,
) -> list[str]:
    args: list[str] = []
    if connect_timeout is not None:
        args.extend(['-o', f'ConnectTimeout={connect_timeout}'])
    args.extend(['-o', f'StrictHostKeyChecking={strict_host_key_checking}'])
    return args
