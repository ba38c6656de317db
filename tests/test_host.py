"""Tests for host introspection helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from mcpvm.errors import MissingSSHKeyError, PrerequisiteError
from mcpvm.host import (
    find_ssh_pubkey,
    host_arch,
    macos_major_version,
    read_ssh_pubkey,
    require_commands,
)
from mcpvm.util import CmdResult


def test_require_commands_lists_missing_with_hints(monkeypatch) -> None:
    present = {'virsh'}
    monkeypatch.setattr(
        'mcpvm.host.which',
        lambda cmd: f'/usr/bin/{cmd}' if cmd in present else None,
    )
    require_commands(['virsh'])
    with pytest.raises(PrerequisiteError) as info:
        require_commands(
            ['virsh', 'vfkit', 'qemu-img'],
            hints={'vfkit': 'Install with: brew install vfkit'},
        )
    msg = str(info.value)
    assert 'vfkit is required' in msg
    assert 'qemu-img is required' in msg
    assert 'brew install vfkit' in msg
    assert 'virsh is required' not in msg


@pytest.mark.parametrize(
    'machine,expected',
    [('arm64', 'aarch64'), ('x86_64', 'x86_64'), ('AMD64', 'x86_64'), ('ppc64le', 'ppc64le')],
)
def test_host_arch_normalizes(monkeypatch, machine, expected) -> None:
    monkeypatch.setattr('mcpvm.host.platform.machine', lambda: machine)
    assert host_arch() == expected


def test_macos_major_version(monkeypatch) -> None:
    monkeypatch.setattr(
        'mcpvm.host.run_cmd', lambda cmd, **kw: CmdResult(0, '14.4.1\n', '')
    )
    assert macos_major_version() == 14
    monkeypatch.setattr(
        'mcpvm.host.run_cmd', lambda cmd, **kw: CmdResult(127, '', 'nope')
    )
    assert macos_major_version() is None


def test_find_ssh_pubkey_prefers_ed25519(tmp_path: Path) -> None:
    (tmp_path / 'id_rsa.pub').write_text('ssh-rsa AAAArsa me\n')
    assert find_ssh_pubkey(tmp_path).name == 'id_rsa.pub'
    (tmp_path / 'id_ed25519.pub').write_text('ssh-ed25519 AAAAed me\n')
    assert find_ssh_pubkey(tmp_path).name == 'id_ed25519.pub'
    assert read_ssh_pubkey(tmp_path) == 'ssh-ed25519 AAAAed me'


def test_missing_ssh_key_names_candidates(tmp_path: Path) -> None:
    with pytest.raises(MissingSSHKeyError) as info:
        find_ssh_pubkey(tmp_path)
    assert 'id_ed25519.pub' in str(info.value)
    assert 'ssh-keygen' in str(info.value)
    (tmp_path / 'id_ed25519.pub').write_text('\n')
    with pytest.raises(MissingSSHKeyError, match='empty'):
        read_ssh_pubkey(tmp_path)
