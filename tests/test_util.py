from __future__ import annotations

import subprocess

import pytest

from mcpvm.util import TIMEOUT_CODE, CmdError, CmdResult, expand, shell_join
from mcpvm.util import run_cmd as _run_cmd


def test_shell_join_quotes() -> None:
    cmd = ['echo', 'a b', "c'd"]
    s = shell_join(cmd)
    assert "'a b'" in s
    assert s.startswith('echo ')


def test_run_cmd_success_and_failure() -> None:
    ok = _run_cmd(['bash', '-lc', 'printf ok'], check=True, capture=True)
    assert ok.code == 0
    assert ok.stdout == 'ok'
    bad = _run_cmd(['bash', '-lc', 'exit 7'], check=False, capture=True)
    assert bad.code == 7
    with pytest.raises(CmdError):
        _run_cmd(['bash', '-lc', 'exit 9'], check=True, capture=True)


def test_run_cmd_passes_input_text() -> None:
    res = _run_cmd(['cat'], input_text='hello', check=True, capture=True)
    assert res.stdout == 'hello'


def test_run_cmd_timeout_maps_to_timeout_code(monkeypatch) -> None:
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs.get('timeout'))

    monkeypatch.setattr('mcpvm.util.subprocess.run', fake_run)
    res = _run_cmd(['sleep', '99'], check=False, timeout=1)
    assert res.code == TIMEOUT_CODE == 124
    assert 'timed out after 1s' in res.stderr
    with pytest.raises(CmdError) as exc:
        _run_cmd(['sleep', '99'], check=True, timeout=1)
    assert exc.value.result.code == TIMEOUT_CODE


def test_cmd_error_detail_prefers_stderr() -> None:
    err = CmdError(['x'], CmdResult(1, 'out\n', ' boom \n'))
    assert err.detail == 'boom'
    err = CmdError(['x'], CmdResult(1, 'only stdout\n', ''))
    assert err.detail == 'only stdout'


def test_expand_user_and_vars(monkeypatch) -> None:
    monkeypatch.setenv('HOME', '/home/tester')
    monkeypatch.setenv('MCPVM_TEST_DIR', 'imgs')
    assert expand('~/x') == '/home/tester/x'
    assert expand('/srv/$MCPVM_TEST_DIR') == '/srv/imgs'
