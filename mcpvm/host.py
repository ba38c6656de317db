"""Host introspection: platform, architecture, tool presence, and SSH keys."""

from __future__ import annotations

import platform
from pathlib import Path

from loguru import logger

from .errors import MissingSSHKeyError, PrerequisiteError
from .util import expand, run_cmd, which

log = logger

# Preferred first; the rest are fallbacks in order.
SSH_PUBKEY_NAMES = ['id_ed25519.pub', 'id_rsa.pub']

_ARCH_ALIASES = {
    'amd64': 'x86_64',
    'x86_64': 'x86_64',
    'arm64': 'aarch64',
    'aarch64': 'aarch64',
}


def host_system() -> str:
    return platform.system()


def host_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def missing_commands(cmds: list[str]) -> list[str]:
    return [c for c in cmds if which(c) is None]


def require_commands(cmds: list[str], *, hints: dict[str, str] | None = None) -> None:
    missing = missing_commands(cmds)
    if not missing:
        return
    hints = hints or {}
    lines = [f'{c} is required but not installed' for c in missing]
    for c in missing:
        if c in hints:
            lines.append(f'  {hints[c]}')
    raise PrerequisiteError('\n'.join(lines))


def macos_version() -> str:
    res = run_cmd(['sw_vers', '-productVersion'], check=False, capture=True)
    return res.stdout.strip()


def macos_major_version() -> int | None:
    raw = macos_version()
    head = raw.split('.', 1)[0]
    return int(head) if head.isdigit() else None


def find_ssh_pubkey(ssh_dir: str | Path = '~/.ssh') -> Path:
    """
    Return the first existing public key in preference order.

    Raises:
        MissingSSHKeyError: if none of the candidate keys exist.
    """
    base = Path(expand(str(ssh_dir)))
    candidates = [base / n for n in SSH_PUBKEY_NAMES]
    for cand in candidates:
        if cand.is_file():
            log.debug('Using SSH public key {}', cand)
            return cand
    raise MissingSSHKeyError(
        'SSH public key not found; looked for: '
        + ', '.join(str(c) for c in candidates)
        + '\n  Generate one with: ssh-keygen -t ed25519'
    )


def read_ssh_pubkey(ssh_dir: str | Path = '~/.ssh') -> str:
    path = find_ssh_pubkey(ssh_dir)
    content = path.read_text(encoding='utf-8').strip()
    if not content:
        raise MissingSSHKeyError(f'SSH public key {path} is empty')
    return content
