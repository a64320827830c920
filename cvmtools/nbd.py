"""Attach disk images to kernel NBD devices via qemu-nbd."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .errors import AttachmentError, CvmToolsError
from .poll import DEFAULT_POLL_INTERVAL, DEFAULT_POLL_RETRIES, wait_for_path
from .util import run_cmd

log = logger

DEFAULT_NBD_DEVICE = '/dev/nbd0'

_SUFFIX_FORMATS = {
    '.vhd': 'vpc',
    '.vpc': 'vpc',
    '.qcow2': 'qcow2',
}


@dataclass(frozen=True)
class BlockDeviceHandle:
    device_path: Path
    backing_image_path: Path
    partition_path: Path


def partition_path_for(device: str | Path, partition: int = 1) -> Path:
    return Path(f'{device}p{partition}')


def image_format_for(image: str | Path, fmt: str = '') -> str:
    """
    Pick the qemu-nbd ``--format`` for an image.

    Example:
        >>> image_format_for('jammy.img')
        'raw'
        >>> image_format_for('disk.VHD')
        'vpc'
        >>> image_format_for('disk.vhd', 'raw')
        'raw'
    """
    if fmt:
        return fmt
    return _SUFFIX_FORMATS.get(Path(image).suffix.lower(), 'raw')


def ensure_nbd_module() -> None:
    # modprobe on an already-loaded module is a successful no-op.
    try:
        run_cmd(['modprobe', 'nbd'], sudo=True, check=True, capture=True)
    except CvmToolsError as ex:
        raise AttachmentError(f'Failed to load nbd kernel module: {ex}') from ex


def attach(
    image: str | Path,
    *,
    device: str | Path = DEFAULT_NBD_DEVICE,
    fmt: str = '',
    partition: int = 1,
    retries: int = DEFAULT_POLL_RETRIES,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> BlockDeviceHandle:
    """
    Connect ``image`` to ``device`` and wait for its partition node.

    The kernel creates the partition node asynchronously after qemu-nbd
    returns, so the node is polled for with a bounded budget. If it never
    appears the device is disconnected again before raising.

    Raises:
        AttachmentError: connect failed or the partition never appeared.
    """
    image = Path(image)
    device = Path(device)
    fmt = image_format_for(image, fmt)
    handle = BlockDeviceHandle(
        device_path=device,
        backing_image_path=image,
        partition_path=partition_path_for(device, partition),
    )
    log.info('Attaching {} to {} (format={})', image, device, fmt)
    try:
        run_cmd(
            ['qemu-nbd', '--format', fmt, f'--connect={device}', str(image)],
            sudo=True,
            check=True,
            capture=True,
        )
    except CvmToolsError as ex:
        raise AttachmentError(
            f'Failed to attach {image} to {device}: {ex}'
        ) from ex
    try:
        wait_for_path(
            handle.partition_path,
            retries=retries,
            interval=interval,
            desc=f'nbd partition {handle.partition_path}',
        )
    except CvmToolsError as ex:
        err = AttachmentError(f'nbd device not created: {ex}')
        try:
            detach(handle)
        except CvmToolsError as detach_ex:
            err.release_errors.append(detach_ex)
            err.add_note(f'during cleanup: {detach_ex}')
        raise err from ex
    log.debug('Partition ready: {}', handle.partition_path)
    return handle


def detach(handle: BlockDeviceHandle) -> None:
    log.info('Disconnecting {}', handle.device_path)
    run_cmd(
        ['qemu-nbd', '--disconnect', str(handle.device_path)],
        sudo=True,
        check=True,
        capture=True,
    )
