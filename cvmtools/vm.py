"""Launch and stop the daemonized QEMU instance backed by the vTPM sidecar."""

from __future__ import annotations

import shutil
from pathlib import Path

from loguru import logger

from .config import CvmToolsConfig
from .errors import CvmToolsError, LaunchError, ProcessStopError
from .tpm import kill_process
from .util import pid_alive, read_pid, run_cmd

log = logger

QEMU_BINARY = 'qemu-system-x86_64'


def copy_firmware_vars(template: str | Path, dest: str | Path) -> Path:
    """Give this launch its own writable UEFI variable store."""
    template = Path(template)
    dest = Path(dest)
    if dest.resolve() == template.resolve():
        raise LaunchError(
            f'Firmware vars copy would overwrite its template: {template}'
        )
    try:
        shutil.copyfile(template, dest)
    except OSError as ex:
        raise LaunchError(f'failed to copy OVMF vars: {ex}') from ex
    return dest


def qemu_args(
    cfg: CvmToolsConfig,
    disk_image: str | Path,
    seed_image: str | Path,
    tpm_socket: str | Path,
    vars_path: str | Path,
) -> list[str]:
    vm = cfg.vm
    return [
        QEMU_BINARY,
        # basic VM config
        '--cpu', vm.cpu,
        '-machine', vm.machine,
        '-m', str(vm.memory_mb),
        # qemu process management
        '-daemonize',
        '-pidfile', vm.pid_file,
        '-qmp', f'unix:{vm.qmp_socket},server=on,wait=off',
        # guest writes never reach the attached images
        '-snapshot',
        '-netdev', f'id=net00,type=user,hostfwd=tcp::{vm.ssh_port}-:22',
        '-device', 'virtio-net-pci,netdev=net00',
        '-chardev', f'socket,id=chrtpm,path={tpm_socket}.ctrl',
        '-tpmdev', 'emulator,id=tpm0,chardev=chrtpm',
        '-device', 'tpm-tis,tpmdev=tpm0',
        '-drive', f'if=virtio,format=raw,file={disk_image}',
        # NoCloud seed
        '-drive', f'if=virtio,format=raw,file={seed_image}',
        '-drive',
        f'if=pflash,format=raw,unit=0,file={vm.ovmf_code},readonly=on',
        '-drive', f'if=pflash,format=raw,unit=1,file={vars_path}',
    ]  # fmt: skip


def validate_launch_inputs(
    cfg: CvmToolsConfig, disk_image: str | Path
) -> Path:
    """
    Check what a launch needs before any work is done for it.

    A stale VM pid file is removed; a live one is refused.

    Raises:
        LaunchError: the disk image is missing or a VM is already running.
    """
    disk_image = Path(disk_image)
    pid_file = Path(cfg.vm.pid_file)
    if not disk_image.exists():
        raise LaunchError(f'Disk image not found: {disk_image}')
    if pid_file.exists():
        pid = read_pid(pid_file)
        if pid is not None and pid_alive(pid):
            raise LaunchError(
                f'A VM is already running (pid {pid}, pid file {pid_file})'
            )
        log.warning('Removing stale VM pid file {}', pid_file)
        pid_file.unlink()
    return disk_image


def launch_vm(
    cfg: CvmToolsConfig,
    disk_image: str | Path,
    seed_image: str | Path,
    *,
    tpm_socket: str | Path | None = None,
) -> list[str]:
    """
    Start the VM daemonized; return the argv that was used.

    A zero exit at qemu's fork point counts as launched; guest liveness is
    not checked beyond that.

    Raises:
        LaunchError: missing inputs, firmware copy failure, or qemu error.
    """
    disk_image = validate_launch_inputs(cfg, disk_image)
    seed_image = Path(seed_image)
    tpm_socket = Path(tpm_socket or cfg.tpm.socket)
    if not seed_image.exists():
        raise LaunchError(f'Seed image not found: {seed_image}')
    ctrl = Path(f'{tpm_socket}.ctrl')
    if not ctrl.exists():
        log.warning(
            'vTPM control socket {} does not exist; run `cvmtools tpm start`',
            ctrl,
        )
    vars_path = copy_firmware_vars(cfg.vm.ovmf_vars_template, cfg.vm.ovmf_vars)
    cmd = qemu_args(cfg, disk_image, seed_image, tpm_socket, vars_path)
    log.info('Starting VM from {}', disk_image)
    try:
        run_cmd(cmd, check=True, capture=True)
    except CvmToolsError as ex:
        raise LaunchError(f'failed to run qemu: {ex}') from ex
    return cmd


def kill_vm(cfg: CvmToolsConfig) -> int:
    pid_file = Path(cfg.vm.pid_file)
    try:
        pid = kill_process(pid_file)
    except ProcessStopError as ex:
        raise ProcessStopError(f'Failed to stop VM: {ex}') from ex
    return pid


def vm_status(cfg: CvmToolsConfig) -> str:
    pid_file = Path(cfg.vm.pid_file)
    if not pid_file.exists():
        return 'VM not running'
    pid = read_pid(pid_file)
    if pid is not None and pid_alive(pid):
        return f'VM is running, pid: {pid} (qmp: {cfg.vm.qmp_socket})'
    return f'VM pid file is stale ({pid_file})'
