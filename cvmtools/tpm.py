"""Supervise the swtpm vTPM sidecar: start, provision, status, stop, destroy."""

from __future__ import annotations

import enum
import shutil
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .config import CvmToolsConfig
from .errors import (
    CvmToolsError,
    ProcessStopError,
    ProvisionError,
    SidecarStartError,
)
from .poll import DEFAULT_POLL_INTERVAL, DEFAULT_POLL_RETRIES, wait_for_path
from .release import attach_release_errors
from .util import ensure_dir, pid_alive, read_pid, run_cmd

log = logger

# swtpm's permanent-state file; present once the TPM has been initialized.
PERMANENT_STATE_FILE = 'tpm2-00.permall'


@dataclass(frozen=True)
class SidecarPaths:
    state_dir: Path
    socket_path: Path
    pid_file: Path

    @property
    def control_socket(self) -> Path:
        return Path(f'{self.socket_path}.ctrl')

    @classmethod
    def from_config(cls, cfg: CvmToolsConfig) -> 'SidecarPaths':
        return cls(
            state_dir=Path(cfg.tpm.state_dir),
            socket_path=Path(cfg.tpm.socket),
            pid_file=Path(cfg.tpm.pid_file),
        )


class SidecarState(enum.Enum):
    NOT_SETUP = 'not-setup'
    SETUP_NOT_RUNNING = 'setup-not-running'
    RUNNING = 'running'
    STALE = 'stale'


@dataclass(frozen=True)
class SidecarStatus:
    state: SidecarState
    pid: int | None = None

    def render(self) -> str:
        if self.state is SidecarState.RUNNING:
            return f'vTPM is running, pid: {self.pid}'
        if self.state is SidecarState.STALE:
            shown = self.pid if self.pid is not None else '?'
            return f'vTPM pid file is stale (pid {shown} is not running)'
        if self.state is SidecarState.SETUP_NOT_RUNNING:
            return 'vTPM setup but not running'
        return 'vTPM not setup and not running'


def swtpm_args(paths: SidecarPaths, *, server: bool = False) -> list[str]:
    cmd = [
        'swtpm',
        'socket',
        '--tpm2',
        '--pid',
        f'file={paths.pid_file}',
        '--tpmstate',
        f'dir={paths.state_dir}',
        '--ctrl',
        f'type=unixio,path={paths.control_socket}',
        '--flags',
        'not-need-init,startup-clear',
        '-d',
    ]
    if server:
        cmd += ['--server', f'type=unixio,path={paths.socket_path}']
    return cmd


def start_vtpm(
    paths: SidecarPaths,
    *,
    server: bool = False,
    retries: int = DEFAULT_POLL_RETRIES,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> int:
    """
    Launch swtpm detached and return the pid it records.

    With ``server`` a data socket is exposed in addition to the control
    socket so host-side tools (tpm2-tools) can talk to the TPM directly.

    Raises:
        SidecarStartError: launch failed or no pid file was written.
    """
    status = vtpm_status(paths)
    if status.state is SidecarState.RUNNING:
        raise SidecarStartError(f'vTPM is already running, pid: {status.pid}')
    if status.state is SidecarState.STALE:
        # An old pid file would satisfy the wait below.
        log.warning('Removing stale vTPM pid file {}', paths.pid_file)
        paths.pid_file.unlink(missing_ok=True)
    ensure_dir(paths.state_dir)
    log.info('Starting vTPM (state={}, server={})', paths.state_dir, server)
    try:
        run_cmd(swtpm_args(paths, server=server), check=True, capture=True)
    except CvmToolsError as ex:
        raise SidecarStartError(f'Failed to start swtpm: {ex}') from ex
    try:
        wait_for_path(
            paths.pid_file,
            retries=retries,
            interval=interval,
            desc='swtpm pid file',
        )
    except CvmToolsError as ex:
        raise SidecarStartError(
            f'swtpm reported success but wrote no pid file: {ex}'
        ) from ex
    pid = read_pid(paths.pid_file)
    if pid is None:
        raise SidecarStartError(f'Unreadable swtpm pid file: {paths.pid_file}')
    log.info('vTPM running with pid {}', pid)
    return pid


def vtpm_status(paths: SidecarPaths) -> SidecarStatus:
    """
    Inspect sidecar state without side effects.

    The pid file decides "running"; the signal-0 liveness probe separates a
    live process from a stale pid file left behind by a crash.
    """
    if paths.pid_file.exists():
        pid = read_pid(paths.pid_file)
        if pid is not None and pid_alive(pid):
            return SidecarStatus(SidecarState.RUNNING, pid)
        return SidecarStatus(SidecarState.STALE, pid)
    if (paths.state_dir / PERMANENT_STATE_FILE).exists():
        return SidecarStatus(SidecarState.SETUP_NOT_RUNNING)
    return SidecarStatus(SidecarState.NOT_SETUP)


def kill_process(pid_file: str | Path) -> int:
    """Send SIGTERM to the pid recorded in ``pid_file`` and remove the file."""
    pid_file = Path(pid_file)
    if not pid_file.exists():
        raise ProcessStopError(f'Pid file not found: {pid_file}')
    pid = read_pid(pid_file)
    if pid is None:
        raise ProcessStopError(f'Pid file has no usable pid: {pid_file}')
    try:
        run_cmd(['kill', str(pid)], check=True, capture=True)
    except CvmToolsError as ex:
        raise ProcessStopError(f'Failed to stop pid {pid}: {ex}') from ex
    # swtpm removes its own pid file on clean exit.
    pid_file.unlink(missing_ok=True)
    log.info('Stopped pid {}', pid)
    return pid


def stop_vtpm(paths: SidecarPaths) -> int:
    return kill_process(paths.pid_file)


def generate_srk(
    socket: str | Path, *, ctx: str | Path = 'srk.ctx', pub: str | Path = 'srk.pub'
) -> None:
    """Create the storage root key and export its public portion."""
    tcti = f'swtpm:path={socket}'
    run_cmd(
        ['tpm2_createprimary', '-T', tcti, '-c', str(ctx)],
        check=True,
        capture=True,
    )
    run_cmd(
        ['tpm2_readpublic', '-T', tcti, '-c', str(ctx), '-o', str(pub)],
        check=True,
        capture=True,
    )
    log.info('Wrote SRK context {} and public key {}', ctx, pub)


def setup_vtpm(
    paths: SidecarPaths,
    *,
    srk_ctx: str | Path = 'srk.ctx',
    srk_pub: str | Path = 'srk.pub',
    retries: int = DEFAULT_POLL_RETRIES,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> None:
    """
    Provision the vTPM: run it in server mode just long enough to create an SRK.

    Refuses to run while a sidecar is already up. The sidecar started here
    is stopped afterwards whether or not key generation worked; a stop
    failure is logged and attached to a primary error.
    """
    status = vtpm_status(paths)
    if status.state is SidecarState.RUNNING:
        raise ProvisionError(
            f'vTPM is already running (pid {status.pid}); '
            'stop it with `cvmtools tpm kill` before setup'
        )
    primary: BaseException | None = None
    started = False
    try:
        start_vtpm(paths, server=True, retries=retries, interval=interval)
        started = True
        wait_for_path(
            paths.socket_path,
            retries=retries,
            interval=interval,
            desc='swtpm data socket',
        )
        generate_srk(paths.socket_path, ctx=srk_ctx, pub=srk_pub)
    except CvmToolsError as ex:
        primary = ex
    stop_errors: list[BaseException] = []
    if started:
        try:
            stop_vtpm(paths)
        except CvmToolsError as ex:
            log.warning('Could not stop vTPM after provisioning: {}', ex)
            stop_errors.append(ex)
    if primary is not None:
        if stop_errors:
            attach_release_errors(primary, stop_errors)
        raise ProvisionError(
            f'vTPM provisioning failed: {primary}', release_errors=stop_errors
        ) from primary


def destroy_vtpm(paths: SidecarPaths) -> bool:
    """
    Remove all persisted vTPM state, stopping the sidecar first if needed.

    Returns:
        bool: False when there was no state directory to remove.
    """
    status = vtpm_status(paths)
    if status.state is SidecarState.RUNNING:
        log.info(
            'Stopping running vTPM (pid {}) before destroying state', status.pid
        )
        try:
            stop_vtpm(paths)
        except CvmToolsError as ex:
            log.warning('Failed to stop vTPM before destroy: {}', ex)
    elif status.state is SidecarState.STALE:
        log.info('Removing stale vTPM pid file {}', paths.pid_file)
        paths.pid_file.unlink(missing_ok=True)
    if not paths.state_dir.exists():
        log.info('No vTPM state at {}', paths.state_dir)
        return False
    shutil.rmtree(paths.state_dir)
    log.info('Destroyed vTPM state {}', paths.state_dir)
    return True
