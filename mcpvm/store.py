"""Per-VM state files: backend records, process id files, and run locks."""

from __future__ import annotations

import contextlib
import fcntl
import os
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Iterator

import ubelt as ub
from loguru import logger

from .errors import VMBusyError

log = logger


@dataclass
class VMRecord:
    name: str
    backend: str
    version: str = ''
    disk: str = ''
    iso: str = ''
    efi_vars: str = ''
    mac: str = ''


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def dump_record(rec: VMRecord) -> str:
    lines = [f'{k} = "{_toml_escape(str(v))}"' for k, v in asdict(rec).items()]
    return '\n'.join(lines) + '\n'


def parse_record(text: str) -> VMRecord:
    raw = tomllib.loads(text)
    known = {f.name for f in fields(VMRecord)}
    data = {k: str(v) for k, v in raw.items() if k in known}
    return VMRecord(**data)


class RecordStore:
    """
    Directory of ``<name>.toml`` records and ``<name>.pid`` files.

    A record's presence is what makes a VM known to a process-based backend.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def ensure(self) -> Path:
        return Path(ub.Path(self.root).ensuredir())

    def record_path(self, name: str) -> Path:
        return self.root / f'{name}.toml'

    def pid_path(self, name: str) -> Path:
        return self.root / f'{name}.pid'

    def has(self, name: str) -> bool:
        return self.record_path(name).is_file()

    def load(self, name: str) -> VMRecord | None:
        fpath = self.record_path(name)
        if not fpath.is_file():
            return None
        rec = parse_record(fpath.read_text(encoding='utf-8'))
        rec.name = name
        return rec

    def save(self, rec: VMRecord) -> Path:
        self.ensure()
        fpath = self.record_path(rec.name)
        tmp = fpath.with_suffix('.toml.part')
        tmp.write_text(dump_record(rec), encoding='utf-8')
        tmp.replace(fpath)
        log.debug('Saved VM record {}', fpath)
        return fpath

    def remove(self, name: str) -> None:
        for fpath in (self.record_path(name), self.pid_path(name)):
            if fpath.exists():
                fpath.unlink()

    def names(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob('*.toml'))

    def read_pid(self, name: str) -> int | None:
        fpath = self.pid_path(name)
        if not fpath.is_file():
            return None
        raw = fpath.read_text(encoding='utf-8').strip()
        return int(raw) if raw.isdigit() else None

    def write_pid(self, name: str, pid: int) -> None:
        self.ensure()
        self.pid_path(name).write_text(f'{pid}\n', encoding='utf-8')

    def clear_pid(self, name: str) -> None:
        fpath = self.pid_path(name)
        if fpath.exists():
            fpath.unlink()


def lock_path(state_dir: str | Path, name: str) -> Path:
    return Path(state_dir) / 'locks' / f'{name}.lock'


@contextlib.contextmanager
def vm_lock(state_dir: str | Path, name: str) -> Iterator[Path]:
    """
    Hold an exclusive advisory lock for ``name`` for the duration of the block.

    Raises:
        VMBusyError: if another process already holds the lock.
    """
    fpath = lock_path(state_dir, name)
    fpath.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(fpath, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as ex:
            raise VMBusyError(
                f"Another mcpvm run is already operating on VM '{name}' "
                f'(lock: {fpath})'
            ) from ex
        log.debug('Acquired lock {}', fpath)
        try:
            yield fpath
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
