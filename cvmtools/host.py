"""Host dependency checks for the external tools each command drives."""

from __future__ import annotations

from typing import Iterable

from loguru import logger

from .errors import MissingDependencyError
from .util import which

log = logger

IMAGE_DOWNLOAD_CMDS = ['az']
IMAGE_CUSTOMIZE_CMDS = ['qemu-nbd']
TPM_START_CMDS = ['swtpm']
TPM_SETUP_CMDS = ['swtpm', 'tpm2_createprimary', 'tpm2_readpublic']
VM_START_CMDS = ['qemu-system-x86_64', 'cloud-localds']


def missing_commands(cmds: Iterable[str]) -> list[str]:
    return [c for c in cmds if which(c) is None]


def check_dependencies(cmds: Iterable[str]) -> None:
    missing = missing_commands(cmds)
    if missing:
        log.error('Missing host commands: {}', ', '.join(missing))
        raise MissingDependencyError(missing)
