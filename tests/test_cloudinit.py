"""Tests for cloud-init payload rendering and ISO packaging."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from mcpvm.cloudinit import (
    VOLUME_LABEL,
    ProvisioningInputs,
    build_cloud_init_iso,
    iso_command,
    remove_cloud_init_iso,
    render_meta_data,
    render_user_data,
    write_cloud_init_files,
)
from mcpvm.errors import ProvisioningError
from mcpvm.host import host_system
from mcpvm.util import CmdError, CmdResult, run_cmd, which


def _inputs(**overrides) -> ProvisioningInputs:
    data = dict(
        hostname='mcpvm-test',
        username='alice',
        ssh_key='ssh-ed25519 AAAAC3Nz alice@laptop',
        org_id='1234567',
        activation_key='my-key',
    )
    data.update(overrides)
    return ProvisioningInputs(**data)


def test_render_user_data_substitutes_everything() -> None:
    text = render_user_data(_inputs())
    assert text.startswith('#cloud-config\n')
    assert 'hostname: mcpvm-test\n' in text
    assert 'fqdn: mcpvm-test.local\n' in text
    assert 'org: "1234567"' in text
    assert 'activation-key: my-key' in text
    assert '- name: alice' in text
    assert '- ssh-ed25519 AAAAC3Nz alice@laptop' in text
    assert 'avahi' in text
    assert '__' not in text


def test_render_meta_data() -> None:
    assert render_meta_data('mcpvm-x') == (
        'instance-id: mcpvm-x\nlocal-hostname: mcpvm-x\n'
    )


@pytest.mark.parametrize(
    'overrides',
    [
        {'hostname': ''},
        {'username': 'a\nb'},
        {'ssh_key': 'ssh-rsa A\nssh-rsa B'},
    ],
)
def test_render_user_data_rejects_bad_fields(overrides) -> None:
    with pytest.raises(ProvisioningError):
        render_user_data(_inputs(**overrides))


def test_write_cloud_init_files(tmp_path: Path) -> None:
    files = write_cloud_init_files(_inputs(), tmp_path / 'stage')
    assert files['meta_data'].name == 'meta-data'
    assert files['user_data'].name == 'user-data'
    assert 'local-hostname: mcpvm-test' in files['meta_data'].read_text()


def test_iso_command_darwin(tmp_path: Path) -> None:
    cmd = iso_command(tmp_path, tmp_path / 'x.iso', system='Darwin')
    assert cmd[:2] == ['hdiutil', 'makehybrid']
    assert cmd[cmd.index('-default-volume-name') + 1] == VOLUME_LABEL
    assert cmd[-1] == str(tmp_path)


def test_iso_command_linux_tool_preference(monkeypatch, tmp_path: Path) -> None:
    present = {'xorriso', 'genisoimage'}
    monkeypatch.setattr(
        'mcpvm.cloudinit.which',
        lambda cmd: f'/usr/bin/{cmd}' if cmd in present else None,
    )
    cmd = iso_command(tmp_path, tmp_path / 'x.iso', system='Linux')
    assert cmd[0] == 'genisoimage'
    assert cmd[cmd.index('-volid') + 1] == 'cidata'
    present.discard('genisoimage')
    cmd = iso_command(tmp_path, tmp_path / 'x.iso', system='Linux')
    assert cmd[:3] == ['xorriso', '-as', 'mkisofs']
    present.clear()
    with pytest.raises(ProvisioningError, match='genisoimage'):
        iso_command(tmp_path, tmp_path / 'x.iso', system='Linux')


def test_iso_command_unsupported_platform(tmp_path: Path) -> None:
    with pytest.raises(ProvisioningError):
        iso_command(tmp_path, tmp_path / 'x.iso', system='Windows')


def test_build_cloud_init_iso_packages_both_files(monkeypatch, tmp_path: Path) -> None:
    captured = {}

    def fake_run(cmd, **kwargs):
        staging = Path(cmd[-1])
        captured['files'] = sorted(p.name for p in staging.iterdir())
        captured['user_data'] = (staging / 'user-data').read_text()
        captured['label'] = cmd[cmd.index('-volid') + 1]
        Path(cmd[cmd.index('-output') + 1]).write_bytes(b'iso')
        return CmdResult(0, '', '')

    monkeypatch.setattr('mcpvm.cloudinit.which', lambda cmd: '/usr/bin/' + cmd)
    monkeypatch.setattr('mcpvm.cloudinit.run_cmd', fake_run)
    out = tmp_path / 'images' / 'mcpvm-test-cloudinit.iso'
    out.parent.mkdir()
    out.write_bytes(b'stale')
    got = build_cloud_init_iso(_inputs(), out, system='Linux')
    assert got == out
    assert out.read_bytes() == b'iso'
    assert captured['files'] == ['meta-data', 'user-data']
    assert captured['label'] == 'cidata'
    assert 'mcpvm-test' in captured['user_data']


def test_build_cloud_init_iso_tool_failure(monkeypatch, tmp_path: Path) -> None:
    def fake_run(cmd, **kwargs):
        raise CmdError(cmd, CmdResult(1, '', 'volume busy'))

    monkeypatch.setattr('mcpvm.cloudinit.run_cmd', fake_run)
    with pytest.raises(ProvisioningError, match='volume busy'):
        build_cloud_init_iso(_inputs(), tmp_path / 'x.iso', system='Darwin')


def test_build_cloud_init_iso_missing_output(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        'mcpvm.cloudinit.run_cmd', lambda cmd, **kw: CmdResult(0, '', '')
    )
    with pytest.raises(ProvisioningError):
        build_cloud_init_iso(_inputs(), tmp_path / 'x.iso', system='Darwin')


def test_remove_cloud_init_iso(tmp_path: Path) -> None:
    iso = tmp_path / 'x.iso'
    iso.write_bytes(b'')
    assert remove_cloud_init_iso(iso) is True
    assert remove_cloud_init_iso(iso) is False


def _can_build_iso() -> bool:
    if host_system() == 'Darwin':
        return which('hdiutil') is not None
    if host_system() == 'Linux':
        return any(which(t) for t in ('genisoimage', 'xorriso', 'mkisofs'))
    return False


def _read_back(iso: Path, dest: Path) -> tuple[dict[str, str], str]:
    """Extract the payload files and the volume label from a built image."""
    names = ('meta-data', 'user-data')
    if which('xorriso') is not None:
        run_cmd(
            [
                'xorriso',
                '-osirrox',
                'on',
                '-joliet',
                'on',
                '-indev',
                str(iso),
                '-extract',
                '/',
                str(dest),
            ],
            check=True,
        )
        files = {n: (dest / n).read_text() for n in names if (dest / n).exists()}
        res = run_cmd(
            ['xorriso', '-indev', str(iso), '-pvd_info'], check=True
        )
        match = re.search(r'Volume Id\s*:\s*(\S+)', res.stdout + res.stderr)
    else:
        files = {}
        for n in names:
            res = run_cmd(
                ['isoinfo', '-J', '-i', str(iso), '-x', '/' + n], check=True
            )
            if res.stdout:
                files[n] = res.stdout
        res = run_cmd(['isoinfo', '-d', '-i', str(iso)], check=True)
        match = re.search(r'Volume id:\s*(\S+)', res.stdout)
    return files, (match.group(1) if match else '')


@pytest.mark.skipif(
    not _can_build_iso() or not (which('xorriso') or which('isoinfo')),
    reason='needs an ISO build tool and xorriso or isoinfo to read it back',
)
def test_cloud_init_iso_reads_back(tmp_path: Path) -> None:
    inputs = ProvisioningInputs(
        hostname='mcpvm-x',
        username='alice',
        ssh_key='ssh-ed25519 AAAA...',
        org_id='1234567',
        activation_key='my-key',
    )
    iso = build_cloud_init_iso(inputs, tmp_path / 'mcpvm-x-cloudinit.iso')
    files, label = _read_back(iso, tmp_path / 'extracted')
    assert label == VOLUME_LABEL
    assert sorted(files) == ['meta-data', 'user-data']
    assert files['meta-data'] == render_meta_data('mcpvm-x')
    assert files['user-data'] == render_user_data(inputs)
    for text in files.values():
        assert re.search(r'__[A-Z_]+__', text) is None
    assert '- name: alice' in files['user-data']
    assert '- ssh-ed25519 AAAA...' in files['user-data']
