from __future__ import annotations

from pathlib import Path

import pytest

from mcpvm.cli.config import ConfigInitCLI, ConfigShowCLI
from mcpvm.cli.main import main
from mcpvm.config import MCPVMConfig, load


@pytest.fixture(autouse=True)
def _no_backend_env(monkeypatch) -> None:
    monkeypatch.delenv('MCPVM_BACKEND', raising=False)


def test_config_init_writes_loadable_defaults(tmp_path: Path, capsys) -> None:
    cfg_path = tmp_path / 'nested' / 'config.toml'
    assert ConfigInitCLI.main(argv=False, config=str(cfg_path)) == 0
    assert str(cfg_path) in capsys.readouterr().out
    text = cfg_path.read_text(encoding='utf-8')
    assert '[vm]' in text
    assert 'state_dir = "~/.local/share/mcpvm"' in text
    assert load(cfg_path) == MCPVMConfig()


def test_config_init_records_backend(tmp_path: Path) -> None:
    cfg_path = tmp_path / 'config.toml'
    assert ConfigInitCLI.main(argv=False, config=str(cfg_path), backend='vfkit') == 0
    assert load(cfg_path).backend == 'vfkit'


def test_config_init_refuses_overwrite_without_force(tmp_path: Path, capsys) -> None:
    cfg_path = tmp_path / 'config.toml'
    cfg_path.write_text('verbosity = 2\n', encoding='utf-8')
    assert ConfigInitCLI.main(argv=False, config=str(cfg_path)) == 2
    assert '--force' in capsys.readouterr().err
    assert cfg_path.read_text(encoding='utf-8') == 'verbosity = 2\n'
    assert ConfigInitCLI.main(argv=False, config=str(cfg_path), force=True) == 0
    assert load(cfg_path).verbosity == 1


def test_config_show_prints_resolved_settings(monkeypatch, tmp_path: Path, capsys) -> None:
    cfg_path = tmp_path / 'config.toml'
    cfg_path.write_text('[vm]\ncpus = 6\n', encoding='utf-8')
    monkeypatch.setenv('MCPVM_BACKEND', 'utm')
    assert ConfigShowCLI.main(argv=False, config=str(cfg_path)) == 0
    out = capsys.readouterr().out
    assert out.splitlines()[0] == f'# Settings: {cfg_path}'
    assert 'backend = "utm"' in out
    assert 'cpus = 6' in out
    assert '~' not in out.split('[paths]')[1]


def test_config_show_missing_file_fails(tmp_path: Path, capsys) -> None:
    with pytest.raises(SystemExit) as info:
        main(['config', 'show', '--config', str(tmp_path / 'absent.toml')])
    assert info.value.code == 1
    assert 'Settings file not found' in capsys.readouterr().err


def test_main_config_init(tmp_path: Path) -> None:
    cfg_path = tmp_path / 'config.toml'
    with pytest.raises(SystemExit) as info:
        main(['config', 'init', '--config', str(cfg_path)])
    assert info.value.code == 0
    assert cfg_path.exists()
