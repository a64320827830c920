"""Mount an NBD-attached image, customize its root filesystem, and release it."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from loguru import logger

from .config import CvmToolsConfig
from .errors import CustomizeError, CvmToolsError
from .nbd import BlockDeviceHandle, attach, detach, ensure_nbd_module
from .release import ReleaseStack
from .util import run_cmd

log = logger

CLOUD_INIT_DATASOURCE_CFG = 'etc/cloud/cloud.cfg.d/90_dpkg.cfg'


@dataclass(frozen=True)
class MountHandle:
    mountpoint_path: Path
    source_partition_path: Path


def mount_partition(
    partition: str | Path, *, work_dir: str | Path | None = None
) -> MountHandle:
    """Mount ``partition`` on a fresh directory under ``work_dir`` (or $TMPDIR)."""
    partition = Path(partition)
    if work_dir:
        Path(work_dir).mkdir(parents=True, exist_ok=True)
    mountpoint = Path(
        tempfile.mkdtemp(prefix='cvmtools-mnt-', dir=work_dir or None)
    )
    log.info('Mounting {} on {}', partition, mountpoint)
    try:
        run_cmd(
            ['mount', str(partition), str(mountpoint)],
            sudo=True,
            check=True,
            capture=True,
        )
    except CvmToolsError:
        mountpoint.rmdir()
        raise
    return MountHandle(mountpoint, partition)


def unmount(handle: MountHandle) -> None:
    log.info('Unmounting {}', handle.mountpoint_path)
    run_cmd(
        ['umount', str(handle.mountpoint_path)],
        sudo=True,
        check=True,
        capture=True,
    )
    # Only reached once the filesystem is no longer mounted.
    handle.mountpoint_path.rmdir()


def write_root_file(root: str | Path, relpath: str, content: str) -> Path:
    """Write a file inside a (root-owned) mounted filesystem."""
    target = Path(root) / relpath
    run_cmd(
        ['mkdir', '-p', str(target.parent)], sudo=True, check=True, capture=True
    )
    run_cmd(
        ['tee', str(target)],
        sudo=True,
        check=True,
        capture=True,
        input_text=content,
    )
    return target


def mask_services(root: str | Path, services: Sequence[str]) -> None:
    for service in services:
        log.info('Masking {} in {}', service, root)
        run_cmd(
            ['chroot', str(root), 'systemctl', 'mask', service],
            sudo=True,
            check=True,
            capture=True,
        )


def datasource_list_text(datasources: Sequence[str]) -> str:
    """
    Example:
        >>> datasource_list_text(['NoCloud', 'Azure'])
        'datasource_list: [ NoCloud, Azure ]\\n'
    """
    return f'datasource_list: [ {", ".join(datasources)} ]\n'


def customize_rootfs(root: str | Path, cfg: CvmToolsConfig) -> None:
    """Disable the Azure guest agent and let cloud-init read NoCloud seeds."""
    mask_services(root, cfg.image.masked_services)
    target = write_root_file(
        root,
        CLOUD_INIT_DATASOURCE_CFG,
        datasource_list_text(cfg.image.datasource_list),
    )
    log.info('Wrote cloud-init datasource override {}', target)


def customize_image(
    image: str | Path,
    cfg: CvmToolsConfig,
    *,
    fmt: str = '',
    steps: Callable[[Path, CvmToolsConfig], None] = customize_rootfs,
) -> None:
    """
    Attach, mount, customize, then unmount and detach ``image``.

    Release of the mount and the NBD attachment happens on every exit path.
    Release failures never replace the root cause; they are carried on the
    raised error as ``release_errors``.

    Raises:
        CustomizeError: wrapping whichever step failed first.
    """
    image = Path(image)
    if not image.exists():
        raise CustomizeError(f'Image not found: {image}')
    fmt = fmt or cfg.image.format
    stack = ReleaseStack()
    try:
        ensure_nbd_module()
        with stack:
            handle: BlockDeviceHandle = attach(
                image,
                device=cfg.nbd.device,
                fmt=fmt,
                partition=cfg.nbd.partition,
                retries=cfg.nbd.poll_retries,
                interval=cfg.nbd.poll_interval,
            )
            stack.callback(f'detach {handle.device_path}', detach, handle)
            mount = mount_partition(
                handle.partition_path, work_dir=cfg.paths.work_dir or None
            )
            stack.callback(f'unmount {mount.mountpoint_path}', unmount, mount)
            steps(mount.mountpoint_path, cfg)
    except (CvmToolsError, OSError) as ex:
        raise CustomizeError(
            f'Failed to customize {image}: {ex}',
            release_errors=stack.errors,
        ) from ex
    log.info('Customized image {}', image)
