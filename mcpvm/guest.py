"""Guest reachability: SSH readiness, host-key registration, mDNS, and playbooks."""

from __future__ import annotations

import os
import socket
import time
from pathlib import Path
from typing import Callable

from loguru import logger

from .errors import PlaybookError
from .poll import is_ipv4, poll_until
from .runtime import keyscan_cmd, ssh_base_args
from .util import TIMEOUT_CODE, CmdError, ensure_dir, expand, run_cmd, shell_join

log = logger


def mdns_hostname(name: str) -> str:
    return f'{name}.local'


def ssh_available(ip: str) -> bool:
    res = run_cmd(keyscan_cmd(ip, timeout=3), check=False, capture=True, timeout=15)
    if res.code == TIMEOUT_CODE:
        log.debug('ssh-keyscan against {} hung; treating as not ready', ip)
        return False
    return 'ssh-' in res.stdout


def wait_for_ssh(
    ip: str,
    *,
    max_attempts: int = 30,
    interval: float = 2,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    log.info('Waiting for SSH to be available on {}...', ip)
    ok = poll_until(
        lambda: ssh_available(ip),
        max_attempts=max_attempts,
        interval=interval,
        desc=f'SSH on {ip}',
        sleep=sleep,
    )
    if ok:
        log.info('SSH is available')
        return True
    log.warning('Timeout waiting for SSH on {}', ip)
    return False


def rewrite_keyscan(text: str, ip: str, hostname: str) -> list[str]:
    """
    Re-key ``ssh-keyscan`` output from the IP to the hostname.

    Example:
        >>> from mcpvm.guest import rewrite_keyscan
        >>> out = '# 10.0.0.5:22 SSH-2.0\\n10.0.0.5 ssh-ed25519 AAAA\\n'
        >>> rewrite_keyscan(out, '10.0.0.5', 'mcpvm-x.local')
        ['mcpvm-x.local ssh-ed25519 AAAA']
    """
    lines: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        host, sep, rest = line.partition(' ')
        if not sep:
            continue
        if host == ip:
            host = hostname
        lines.append(f'{host} {rest}')
    return lines


def _prepare_known_hosts(known_hosts: Path) -> None:
    ssh_dir = known_hosts.parent
    ensure_dir(ssh_dir)
    os.chmod(ssh_dir, 0o700)
    known_hosts.touch(exist_ok=True)
    os.chmod(known_hosts, 0o600)


def register_host_keys(
    ip: str,
    hostname: str,
    *,
    known_hosts: str | Path = '~/.ssh/known_hosts',
) -> int:
    """
    Scan the guest's host keys by IP and record them under ``hostname``.

    Returns:
        Number of keys added; 0 when the scan produced nothing.
    """
    known_hosts = Path(expand(str(known_hosts)))
    log.info('Retrieving SSH host keys from {}...', ip)
    _prepare_known_hosts(known_hosts)
    # Always ask ssh-keygen: hashed entries cannot be matched by text search.
    log.info('Removing existing entries for {}...', hostname)
    run_cmd(
        ['ssh-keygen', '-R', hostname, '-f', str(known_hosts)],
        check=False,
        capture=True,
    )
    res = run_cmd(keyscan_cmd(ip, timeout=5), check=False, capture=True, timeout=30)
    if res.code == TIMEOUT_CODE:
        log.warning('ssh-keyscan against {} timed out', ip)
        return 0
    lines = rewrite_keyscan(res.stdout, ip, hostname)
    if not lines:
        log.warning('Failed to retrieve SSH host keys from {}', ip)
        return 0
    with open(known_hosts, 'a', encoding='utf-8') as file:
        for line in lines:
            file.write(line + '\n')
    log.info(
        'Added {} SSH host key(s) for {} to {}', len(lines), hostname, known_hosts
    )
    return len(lines)


def resolve_hostname(hostname: str) -> str:
    try:
        addr = socket.gethostbyname(hostname)
    except OSError:
        return ''
    return addr if is_ipv4(addr) else ''


def wait_for_hostname(
    hostname: str,
    *,
    max_attempts: int = 30,
    interval: float = 2,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    log.info('Waiting for {} to resolve...', hostname)
    addr = poll_until(
        lambda: resolve_hostname(hostname),
        max_attempts=max_attempts,
        interval=interval,
        desc=f'resolution of {hostname}',
        sleep=sleep,
    )
    if addr:
        log.info('{} resolves to {}', hostname, addr)
        return addr
    log.warning('Timeout waiting for {} to resolve', hostname)
    return ''


def playbook_command(playbook: str | Path, target: str, user: str) -> list[str]:
    return [
        'ansible-playbook',
        '-i',
        f'{target},',
        '-u',
        user,
        '--ssh-common-args',
        shell_join(ssh_base_args(connect_timeout=10)),
        str(playbook),
    ]


def run_playbook(playbook: str | Path, target: str, user: str) -> None:
    cmd = playbook_command(playbook, target, user)
    log.info('Running playbook {} against {}', playbook, target)
    try:
        run_cmd(cmd, check=True, capture=False)
    except CmdError as ex:
        raise PlaybookError(
            f'Playbook {playbook} failed against {target} (code={ex.result.code})'
        ) from ex
    log.info('Playbook completed')
