"""Shared utility helpers for subprocess execution, paths, and command formatting."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

log = logger

# Exit code reported for a command killed by its timeout, matching coreutils `timeout`.
TIMEOUT_CODE = 124


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str


class CmdError(RuntimeError):
    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )

    @property
    def detail(self) -> str:
        """The tool's own error text, used when re-raising as a domain error."""
        return (self.result.stderr or self.result.stdout or '').strip()


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(c) for c in cmd)


def run_cmd(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    input_text: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CmdResult:
    """
    Run a hypervisor or host tool and collect its result.

    A command that outlives ``timeout`` yields :data:`TIMEOUT_CODE` (or a
    :class:`CmdError` when ``check`` is set) instead of propagating
    ``subprocess.TimeoutExpired``, so polling loops can treat a hung tool
    like any other failed attempt.
    """
    joined = shell_join(cmd)
    log.opt(depth=1).debug('RUN: {}', joined)
    try:
        proc = subprocess.run(
            cmd,
            input=input_text,
            capture_output=capture,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as ex:
        res = CmdResult(TIMEOUT_CODE, '', f'timed out after {timeout}s')
        log.opt(depth=1).debug('Timed out after {}s: {}', timeout, joined)
        if check:
            raise CmdError(cmd, res) from ex
        return res
    res = CmdResult(proc.returncode, proc.stdout or '', proc.stderr or '')
    if res.code == 0:
        log.opt(depth=1).debug('ok: {}', joined)
    elif check:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={}',
            res.code,
            joined,
            res.stderr.strip(),
        )
        raise CmdError(cmd, res)
    return res


def which(cmd: str) -> Optional[str]:
    from shutil import which as _which

    return _which(cmd)


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))
