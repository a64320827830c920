"""Build the NoCloud seed image consumed by cloud-init on first boot."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Sequence

from loguru import logger

from .errors import CvmToolsError, SeedError
from .util import run_cmd

log = logger


def render_user_data(ssh_import_ids: Sequence[str]) -> str:
    """
    Example:
        >>> print(render_user_data(['gh:octocat']), end='')
        #cloud-config
        ssh_import_id:
          - gh:octocat
    """
    lines = ['#cloud-config']
    if ssh_import_ids:
        lines.append('ssh_import_id:')
        lines.extend(f'  - {ident}' for ident in ssh_import_ids)
    return '\n'.join(lines) + '\n'


def create_seed_image(
    dest: str | Path,
    ssh_import_ids: Sequence[str],
    *,
    work_dir: str | Path | None = None,
) -> Path:
    dest = Path(dest)
    if work_dir:
        Path(work_dir).mkdir(parents=True, exist_ok=True)
    user_data = Path(work_dir or tempfile.gettempdir()) / 'user_data.yaml'
    try:
        user_data.write_text(render_user_data(ssh_import_ids), encoding='utf-8')
    except OSError as ex:
        raise SeedError(f'failed to create {user_data}: {ex}') from ex
    log.info('Creating cloud-init seed image {}', dest)
    try:
        run_cmd(
            ['cloud-localds', str(dest), str(user_data)],
            check=True,
            capture=True,
        )
    except CvmToolsError as ex:
        raise SeedError(f'failed to create cloud-init drive: {ex}') from ex
    return dest
