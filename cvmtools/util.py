"""Shared utility helpers for subprocess execution, paths, and command formatting."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .errors import ExternalCommandError

log = logger


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(str(c)) for c in cmd)


def run_cmd(
    cmd: Sequence[str],
    *,
    sudo: bool = False,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    input_text: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
) -> CmdResult:
    """
    Run an external program synchronously.

    Args:
        cmd: program followed by its arguments.
        sudo: escalate with non-interactive sudo when not already root.
        check: raise :class:`ExternalCommandError` on a nonzero exit.
        capture: capture stdout / stderr instead of inheriting them.

    Returns:
        CmdResult: exit code and captured output.
    """
    cmd = [str(c) for c in cmd]
    original_cmd = cmd
    if sudo and os.geteuid() != 0:
        # Non-interactive sudo: fail fast if password/TTY is required.
        cmd = ['sudo', '-n', *cmd]
        log.opt(depth=1).debug(
            'Running with sudo: {}', shell_join(original_cmd)
        )
    log.opt(depth=1).debug('RUN: {}', shell_join(cmd))
    try:
        p = subprocess.run(
            cmd,
            input=input_text if input_text is not None else None,
            capture_output=capture,
            text=text,
            env=env,
        )
    except OSError as ex:
        log.opt(depth=1).error('Could not execute {}: {}', cmd[0], ex)
        if not check:
            return CmdResult(127, '', str(ex))
        raise ExternalCommandError(
            original_cmd[0], original_cmd[1:], 127, str(ex)
        ) from ex
    res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    if check and p.returncode != 0:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={} stdout={}',
            p.returncode,
            shell_join(cmd),
            res.stderr.strip(),
            res.stdout.strip(),
        )
        raise ExternalCommandError(
            original_cmd[0],
            original_cmd[1:],
            p.returncode,
            res.stderr,
            res.stdout,
        )
    if p.returncode == 0:
        log.opt(depth=1).debug('Command ok code=0 cmd={}', shell_join(cmd))
    return res


def which(cmd: str) -> Optional[str]:
    from shutil import which as _which

    return _which(cmd)


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))


def read_pid(pid_file: Path) -> int | None:
    """Return the integer pid recorded in ``pid_file`` or None if unusable."""
    try:
        raw = Path(pid_file).read_text(encoding='utf-8').strip()
    except FileNotFoundError:
        return None
    try:
        return int(raw)
    except ValueError:
        log.warning('Pid file {} has unexpected content: {!r}', pid_file, raw)
        return None


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        # kill(0) / kill(-n) would address a process group.
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user (e.g. root-started swtpm).
        return True
    return True
