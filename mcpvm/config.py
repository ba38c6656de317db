"""Settings dataclasses, TOML persistence, and the credentials env file."""

from __future__ import annotations

import getpass
import os
import shlex
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path

import ubelt as ub

from .errors import ConfigError
from .util import expand

RHEL_DOWNLOAD_URL = 'https://access.redhat.com/downloads/content/rhel'
DEFAULT_CREDENTIALS_FILE = '~/.config/rhelmcp/config.env'
CREDENTIAL_KEYS = ('REDHAT_ORG_ID', 'REDHAT_ACTIVATION_KEY')


def _default_user() -> str:
    try:
        return getpass.getuser()
    except Exception:
        return os.environ.get('USER', 'cloud-user')


@dataclass
class VMConfig:
    cpus: int = 2
    memory_mb: int = 4096
    disk_gb: int = 16
    user: str = field(default_factory=_default_user)
    network: str = 'default'


@dataclass
class PollConfig:
    ip_attempts: int = 30
    ip_interval: float = 2
    ssh_attempts: int = 30
    ssh_interval: float = 2
    hostname_attempts: int = 30
    hostname_interval: float = 2
    stop_grace_s: int = 15
    name_attempts: int = 20


@dataclass
class PathsConfig:
    # Empty image_dir means "use the backend's conventional location".
    image_dir: str = ''
    state_dir: str = '~/.local/share/mcpvm'
    libvirt_image_dir: str = '~/.local/share/libvirt/images'
    credentials_file: str = DEFAULT_CREDENTIALS_FILE
    ssh_dir: str = '~/.ssh'
    known_hosts: str = '~/.ssh/known_hosts'


@dataclass
class MCPVMConfig:
    vm: VMConfig = field(default_factory=VMConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    backend: str = ''
    verbosity: int = 1

    def expanded_paths(self) -> 'MCPVMConfig':
        self.paths.image_dir = (
            expand(self.paths.image_dir) if self.paths.image_dir else ''
        )
        self.paths.state_dir = expand(self.paths.state_dir)
        self.paths.libvirt_image_dir = expand(self.paths.libvirt_image_dir)
        self.paths.credentials_file = expand(self.paths.credentials_file)
        self.paths.ssh_dir = expand(self.paths.ssh_dir)
        self.paths.known_hosts = expand(self.paths.known_hosts)
        return self


@dataclass(frozen=True)
class Credentials:
    org_id: str
    activation_key: str


def settings_path() -> Path:
    return Path(ub.Path.appdir('mcpvm', type='config')) / 'config.toml'


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def _toml_value(v: object) -> str:
    if isinstance(v, bool):
        return 'true' if v else 'false'
    if isinstance(v, (int, float)):
        return str(v)
    return f'"{_toml_escape(str(v))}"'


def dump_toml(cfg: MCPVMConfig) -> str:
    d = asdict(cfg)
    lines: list[str] = []
    if d['backend']:
        lines.append(f'backend = {_toml_value(d["backend"])}')
    if d['verbosity'] != 1:
        lines.append(f'verbosity = {d["verbosity"]}')
    if lines:
        lines.append('')
    for section in ('vm', 'poll', 'paths'):
        lines.append(f'[{section}]')
        for k, v in d[section].items():
            lines.append(f'{k} = {_toml_value(v)}')
        lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def load(path: Path) -> MCPVMConfig:
    try:
        raw = tomllib.loads(path.read_text(encoding='utf-8'))
    except tomllib.TOMLDecodeError as ex:
        raise ConfigError(f'Invalid settings file {path}: {ex}') from ex
    cfg = MCPVMConfig()
    for section in ('vm', 'poll', 'paths'):
        if section in raw and isinstance(raw[section], dict):
            obj = getattr(cfg, section)
            for k, v in raw[section].items():
                if hasattr(obj, k):
                    setattr(obj, k, v)
    if 'backend' in raw:
        cfg.backend = str(raw['backend']).strip()
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def save(path: Path, cfg: MCPVMConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_toml(cfg), encoding='utf-8')


def load_settings(path: str | Path | None = None) -> MCPVMConfig:
    """Load the settings file if present, else defaults; env overrides backend."""
    fpath = Path(expand(str(path))) if path else settings_path()
    if path and not fpath.exists():
        raise ConfigError(f'Settings file not found: {fpath}')
    cfg = load(fpath) if fpath.exists() else MCPVMConfig()
    env_backend = os.environ.get('MCPVM_BACKEND', '').strip()
    if env_backend:
        cfg.backend = env_backend
    return cfg.expanded_paths()


def parse_env_file(text: str) -> dict[str, str]:
    """
    Parse shell-style ``KEY=value`` assignments.

    Supports comments, blank lines, an optional ``export`` prefix and shell
    quoting of values.

    Example:
        >>> from mcpvm.config import parse_env_file
        >>> parse_env_file('# creds\\nexport A="x y"\\nB=2\\n')
        {'A': 'x y', 'B': '2'}
    """
    out: dict[str, str] = {}
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        key, sep, value = line.partition('=')
        key = key.strip()
        if not sep or not key.isidentifier():
            raise ConfigError(f'Malformed line {lineno}: {raw_line!r}')
        try:
            parts = shlex.split(value, comments=True)
        except ValueError as ex:
            raise ConfigError(f'Malformed value on line {lineno}: {ex}') from ex
        out[key] = ' '.join(parts)
    return out


def load_credentials(path: str | Path) -> Credentials:
    fpath = Path(expand(str(path)))
    if not fpath.is_file():
        raise ConfigError(f'Configuration file not found at {fpath}')
    values = parse_env_file(fpath.read_text(encoding='utf-8'))
    missing = [k for k in CREDENTIAL_KEYS if not values.get(k)]
    if missing:
        raise ConfigError(
            f'{" and ".join(CREDENTIAL_KEYS)} must be set in {fpath} '
            f'(missing: {", ".join(missing)})'
        )
    return Credentials(
        org_id=values['REDHAT_ORG_ID'],
        activation_key=values['REDHAT_ACTIVATION_KEY'],
    )
