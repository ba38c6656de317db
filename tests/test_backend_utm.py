"""Tests for the UTM backend against a scripted osascript."""

from __future__ import annotations

from pathlib import Path

import pytest

from mcpvm.backends import utm
from mcpvm.backends.base import RUNNING, STOPPED
from mcpvm.backends.utm import UTMBackend, normalize_state, parse_name_list
from mcpvm.config import MCPVMConfig
from mcpvm.errors import BackendError, PrerequisiteError, VMNotFoundError
from mcpvm.util import CmdError, CmdResult


class FakeUTM:
    """Answers osascript invocations by matching the script text."""

    def __init__(self, vms=None):
        self.vms = dict(vms or {})
        self.calls = []
        self.ips = ''
        self.obey_request = True
        self.fail_create = False

    def __call__(self, cmd, **kwargs):
        assert cmd[:2] == ['osascript', '-']
        script = kwargs['input_text']
        args = list(cmd[2:])
        check = kwargs.get('check', True)
        self.calls.append((script, args))
        code, out, err = self._dispatch(script, args)
        res = CmdResult(code, out, err)
        if check and code != 0:
            raise CmdError(cmd, res)
        return res

    def _dispatch(self, script, args):
        if script == utm.SCRIPT_LIST_NAMES:
            return 0, '\n'.join(self.vms) + '\n', ''
        if script == utm.SCRIPT_CREATE:
            if self.fail_create:
                return 1, '', 'execution error: bad drive'
            self.vms[args[0]] = 'started'
            return 0, f'Created and started {args[0]}\n', ''
        name = args[0]
        if name not in self.vms:
            return 1, '', "execution error: Can't get virtual machine"
        if script == utm.SCRIPT_STATUS:
            return 0, self.vms[name] + '\n', ''
        if script == utm.SCRIPT_START:
            self.vms[name] = 'started'
        elif script == utm.SCRIPT_STOP_REQUEST:
            if self.obey_request:
                self.vms[name] = 'stopped'
        elif script == utm.SCRIPT_STOP_FORCE:
            self.vms[name] = 'stopped'
        elif script == utm.SCRIPT_DELETE:
            del self.vms[name]
        elif script == utm.SCRIPT_QUERY_IP:
            return 0, self.ips, ''
        return 0, '', ''

    def scripts(self):
        return [s for s, _ in self.calls]


@pytest.fixture
def cfg(tmp_path: Path) -> MCPVMConfig:
    cfg = MCPVMConfig()
    cfg.paths.state_dir = str(tmp_path / 'state')
    cfg.poll.stop_grace_s = 3
    return cfg


@pytest.fixture
def fake(monkeypatch) -> FakeUTM:
    fake = FakeUTM()
    monkeypatch.setattr('mcpvm.backends.utm.run_cmd', fake)
    monkeypatch.setattr('mcpvm.backends.utm.host_arch', lambda: 'aarch64')
    return fake


def test_parse_and_normalize() -> None:
    assert parse_name_list('mcpvm-a, mcpvm-b\n') == ['mcpvm-a', 'mcpvm-b']
    assert parse_name_list('\n') == []
    assert normalize_state('started') == RUNNING
    assert normalize_state('Paused') == RUNNING
    assert normalize_state('stopped') == STOPPED


def test_check_prerequisites_requires_app(monkeypatch, tmp_path, cfg) -> None:
    monkeypatch.setattr('mcpvm.host.which', lambda cmd: '/usr/bin/' + cmd)
    monkeypatch.setattr('mcpvm.backends.utm.UTM_APP', tmp_path / 'UTM.app')
    with pytest.raises(PrerequisiteError, match='getutm'):
        UTMBackend(cfg).check_prerequisites()
    (tmp_path / 'UTM.app').mkdir()
    UTMBackend(cfg).check_prerequisites()


def test_list_vms_filters_unmanaged(cfg, fake) -> None:
    fake.vms = {'mcpvm-a': 'started', 'Windows 11': 'started', 'mcpvm-b': 'stopped'}
    vms = UTMBackend(cfg).list_vms()
    assert [(v.name, v.state) for v in vms] == [
        ('mcpvm-a', RUNNING),
        ('mcpvm-b', STOPPED),
    ]


def test_create_passes_inputs_as_arguments(cfg, fake, tmp_path) -> None:
    backend = UTMBackend(cfg)
    iso = backend.cloud_init_iso_path('mcpvm-a')
    backend.create_vm('mcpvm-a', '9.5', tmp_path / 'base.qcow2', iso)
    script, args = fake.calls[-1]
    assert script == utm.SCRIPT_CREATE
    assert args == [
        'mcpvm-a',
        str(tmp_path / 'base.qcow2'),
        str(iso),
        '4096',
        '2',
        'aarch64',
    ]
    assert 'mcpvm-a' not in script
    assert backend.vm_exists('mcpvm-a')


def test_create_failure_raises_backend_error(cfg, fake, tmp_path) -> None:
    fake.fail_create = True
    with pytest.raises(BackendError, match='bad drive'):
        UTMBackend(cfg).create_vm('mcpvm-a', '9.5', tmp_path / 'b', tmp_path / 'i')


def test_get_vm_ip_picks_ipv4(cfg, fake) -> None:
    fake.vms = {'mcpvm-a': 'started'}
    fake.ips = 'fe80::5054:ff:fe12:3456\n192.168.64.7\n'
    assert UTMBackend(cfg).get_vm_ip('mcpvm-a', max_retries=2, interval=0) == '192.168.64.7'


def test_get_vm_ip_timeout(cfg, fake) -> None:
    fake.vms = {'mcpvm-a': 'started'}
    sleeps = []
    backend = UTMBackend(cfg, sleep=sleeps.append)
    assert backend.get_vm_ip('mcpvm-a', max_retries=3, interval=2) == ''
    assert sleeps == [2, 2]


def test_start_and_stop_idempotent(cfg, fake) -> None:
    fake.vms = {'mcpvm-a': 'stopped'}
    backend = UTMBackend(cfg, sleep=lambda s: None)
    assert backend.stop_vm('mcpvm-a').changed is False
    assert backend.start_vm('mcpvm-a').changed is True
    assert backend.start_vm('mcpvm-a').changed is False
    assert fake.scripts().count(utm.SCRIPT_START) == 1
    assert backend.stop_vm('mcpvm-a').changed is True
    assert utm.SCRIPT_STOP_FORCE not in fake.scripts()


def test_stop_forces_when_request_ignored(cfg, fake) -> None:
    fake.vms = {'mcpvm-a': 'started'}
    fake.obey_request = False
    sleeps = []
    res = UTMBackend(cfg, sleep=sleeps.append).stop_vm('mcpvm-a')
    assert res.state == STOPPED
    assert fake.scripts()[-1] == utm.SCRIPT_STOP_FORCE
    assert sleeps == [1, 1]
    assert fake.vms['mcpvm-a'] == 'stopped'


def test_delete_removes_vm_and_iso(cfg, fake) -> None:
    fake.vms = {'mcpvm-a': 'started'}
    backend = UTMBackend(cfg, sleep=lambda s: None)
    iso = backend.cloud_init_iso_path('mcpvm-a')
    iso.parent.mkdir(parents=True)
    iso.write_bytes(b'')
    backend.delete_vm('mcpvm-a')
    assert 'mcpvm-a' not in fake.vms
    assert not iso.exists()
    with pytest.raises(VMNotFoundError):
        backend.delete_vm('mcpvm-a')
