"""Acquire base images: HTTP streaming, object-store blobs, and Azure CVM disks."""

from __future__ import annotations

import math
from pathlib import Path

import requests
import ubelt as ub
from loguru import logger

from .config import CvmToolsConfig
from .errors import CvmToolsError, FetchError
from .poll import retry_call
from .release import ReleaseStack
from .util import run_cmd

log = logger

CHUNK_SIZE = 1024 * 1024
ARCHIVE_SUFFIXES = ('.tar', '.tar.gz', '.tgz', '.tar.xz', '.tar.zst')
# Request timeouts (408) and throttling (429) stay retryable.
CLIENT_ERRORS_NOT_RETRIED = frozenset(range(400, 500)) - {408, 429}


def _already_present(dest: Path, force: bool) -> bool:
    if dest.exists() and not force:
        log.info('Image already present, skipping download: {}', dest)
        return True
    return False


def fetch_http(
    url: str,
    dest: str | Path,
    *,
    force: bool = False,
    max_bytes: int | None = None,
    attempts: int = 10,
    session: requests.Session | None = None,
    chunk_size: int = CHUNK_SIZE,
    timeout: float = 60,
) -> Path:
    """
    Stream ``url`` into ``dest``, reading at most ``max_bytes``.

    An interrupted copy is retried up to ``attempts`` times, resuming from
    the bytes already written via an HTTP ``Range`` request. Data lands in a
    ``.part`` file that is renamed into place only once complete.

    Raises:
        FetchError: all attempts failed.
    """
    dest = Path(dest)
    if _already_present(dest, force):
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + '.part')
    part.unlink(missing_ok=True)
    session = session or requests.Session()
    written = 0

    def _copy(attempt: int) -> int:
        nonlocal written
        headers = {'Range': f'bytes={written}-'} if written else {}
        with session.get(
            url, stream=True, headers=headers, timeout=timeout
        ) as resp:
            if resp.status_code in CLIENT_ERRORS_NOT_RETRIED:
                raise FetchError(
                    f'Failed to download {url}: HTTP {resp.status_code}'
                )
            resp.raise_for_status()
            if written and resp.status_code != 206:
                log.warning('Server ignored range request; restarting copy')
                written = 0
            length = int(resp.headers.get('content-length', 0) or 0)
            total = written + length if length else None
            if max_bytes is not None:
                total = min(total, max_bytes) if total else max_bytes
            n_chunks = math.ceil(total / chunk_size) if total else None
            done_chunks = written // chunk_size
            mode = 'ab' if written else 'wb'
            with open(part, mode) as file:
                prog = ub.ProgIter(
                    resp.iter_content(chunk_size=chunk_size),
                    total=n_chunks - done_chunks if n_chunks else None,
                    desc=f'download {dest.name}',
                    verbose=1,
                )
                for chunk in prog:
                    if max_bytes is not None:
                        chunk = chunk[: max_bytes - written]
                    if chunk:
                        file.write(chunk)
                        written += len(chunk)
                    if max_bytes is not None and written >= max_bytes:
                        break
        return written

    log.info('Downloading {} to {}', url, dest)
    try:
        retry_call(
            _copy,
            attempts=attempts,
            retry_on=(requests.RequestException, OSError),
            desc=f'download of {dest.name}',
        )
    except FetchError:
        part.unlink(missing_ok=True)
        raise
    except (requests.RequestException, OSError) as ex:
        part.unlink(missing_ok=True)
        raise FetchError(f'Failed to download {url}: {ex}') from ex
    part.replace(dest)
    log.info('Downloaded {} bytes to {}', written, dest)
    return dest


def is_archive(path: str | Path) -> bool:
    name = Path(path).name.lower()
    return name.endswith(ARCHIVE_SUFFIXES)


def extract_archive(archive: str | Path, dest_dir: str | Path) -> Path:
    archive = Path(archive)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    log.info('Extracting {} into {}', archive, dest_dir)
    try:
        # -S keeps disk images sparse.
        run_cmd(
            ['tar', '-xSf', str(archive), '-C', str(dest_dir)],
            check=True,
            capture=True,
        )
    except CvmToolsError as ex:
        raise FetchError(f'Failed to extract {archive}: {ex}') from ex
    return dest_dir


def fetch_blob(
    identifier: str, dest: str | Path, *, force: bool = False
) -> Path:
    """Download an object-store blob with the az CLI, unpacking archives."""
    dest = Path(dest)
    if _already_present(dest, force):
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    log.info('Downloading blob {} to {}', identifier, dest)
    try:
        run_cmd(
            [
                'az', 'storage', 'blob', 'download',
                '--blob-url', identifier,
                '--file', str(dest),
            ],
            check=True,
            capture=True,
        )  # fmt: skip
    except CvmToolsError as ex:
        raise FetchError(f'Failed to download blob {identifier}: {ex}') from ex
    if is_archive(dest):
        extract_archive(dest, dest.parent)
    return dest


def azure_create_group(group: str, location: str) -> None:
    run_cmd(
        ['az', 'group', 'create', '--location', location,
         '--resource-group', group],
        check=True,
        capture=True,
    )  # fmt: skip


def azure_create_disk(group: str, disk: str, urn: str) -> None:
    run_cmd(
        ['az', 'disk', 'create', '--resource-group', group, '--name', disk,
         '--hyper-v-generation', 'V2', '--image-reference', urn],
        check=True,
        capture=True,
    )  # fmt: skip


def azure_export_disk(group: str, disk: str, duration_s: int = 86400) -> str:
    """Grant temporary read access to a managed disk and return its SAS URL."""
    res = run_cmd(
        ['az', 'disk', 'grant-access', '--resource-group', group,
         '--name', disk, '--duration', str(duration_s),
         '--query', 'accessSas'],
        check=True,
        capture=True,
    )  # fmt: skip
    url = res.stdout.strip().strip('"')
    if not url:
        raise FetchError(f'az returned no SAS URL for disk {disk}')
    return url


def azure_delete_group(group: str) -> None:
    run_cmd(
        ['az', 'group', 'delete', '--resource-group', group,
         '--no-wait', '--yes'],
        check=True,
        capture=True,
    )  # fmt: skip


def download_azure_image(
    suite: str,
    dest: str | Path,
    cfg: CvmToolsConfig,
    *,
    force: bool = False,
    session: requests.Session | None = None,
) -> Path:
    """
    Export Canonical's confidential-VM image for ``suite`` from Azure.

    A scratch resource group holds a managed disk created from the
    marketplace image; the disk is exported through a SAS URL, streamed to
    ``dest``, and the resource group is deleted on every exit path.
    """
    dest = Path(dest)
    if _already_present(dest, force):
        return dest
    icfg = cfg.image
    urn = icfg.urn_template.format(suite=suite)
    stack = ReleaseStack()
    try:
        with stack:
            log.info('Creating resource group {}', icfg.azure_group)
            azure_create_group(icfg.azure_group, icfg.azure_location)
            stack.callback(
                f'delete resource group {icfg.azure_group}',
                azure_delete_group,
                icfg.azure_group,
            )
            log.info('Creating disk {} from {}', icfg.azure_disk, urn)
            azure_create_disk(icfg.azure_group, icfg.azure_disk, urn)
            url = azure_export_disk(
                icfg.azure_group, icfg.azure_disk, icfg.sas_duration_s
            )
            log.info('downloading disk, may take a while...')
            fetch_http(
                url,
                dest,
                force=True,
                max_bytes=icfg.max_bytes,
                attempts=icfg.download_attempts,
                session=session,
            )
    except FetchError:
        raise
    except CvmToolsError as ex:
        raise FetchError(
            f'Failed to download {suite} image from Azure: {ex}',
            release_errors=stack.errors,
        ) from ex
    return dest
