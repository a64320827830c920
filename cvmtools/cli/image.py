"""CLI commands for downloading and customizing cloud images."""

from __future__ import annotations

from pathlib import Path

import scriptconfig as scfg

from ..fetch import download_azure_image, fetch_blob, fetch_http
from ..host import IMAGE_CUSTOMIZE_CMDS, IMAGE_DOWNLOAD_CMDS, check_dependencies
from ..image import customize_image
from ._common import _BaseCommand, _load_cfg, log

DOWNLOAD_SOURCES = ('azure', 'http', 'blob')


class ImageDownloadCLI(_BaseCommand):
    """Download a confidential-VM cloud image (skipped if already present)."""

    suite = scfg.Value('', help='Ubuntu suite (default: image.suite, jammy).')
    source = scfg.Value(
        'azure', help=f'One of: {", ".join(DOWNLOAD_SOURCES)}.'
    )
    url = scfg.Value('', help='Image URL or blob URL for http/blob sources.')
    output = scfg.Value('', help='Destination file (default: <suite>.img).')
    force = scfg.Value(
        False, isflag=True, help='Download even if the file exists.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        source = str(args.source or 'azure').strip().lower()
        if source not in DOWNLOAD_SOURCES:
            raise RuntimeError(
                f'--source must be one of: {", ".join(DOWNLOAD_SOURCES)}'
            )
        suite = args.suite or cfg.image.suite
        dest = Path(args.output or f'{suite}.img')
        if source in {'http', 'blob'} and not args.url:
            raise RuntimeError(f'--url is required for --source {source}')
        if source == 'http':
            print(f'Downloading image file: {dest}')
            fetch_http(
                args.url,
                dest,
                force=args.force,
                max_bytes=cfg.image.max_bytes,
                attempts=cfg.image.download_attempts,
            )
        elif source == 'blob':
            check_dependencies(IMAGE_DOWNLOAD_CMDS)
            print(f'Downloading image file from blob storage: {dest}')
            fetch_blob(args.url, dest, force=args.force)
        else:
            check_dependencies(IMAGE_DOWNLOAD_CMDS)
            print(f'Downloading image file from azure: {dest}')
            download_azure_image(suite, dest, cfg, force=args.force)
        log.info('Image available at {}', dest)
        return 0


class ImageCustomizeCLI(_BaseCommand):
    """Disable the Azure agent and enable NoCloud in an image's rootfs."""

    image = scfg.Value('', position=1, help='Raw/VHD image to customize.')
    format = scfg.Value(
        '', help='qemu-nbd image format (default: infer from suffix).'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        if not args.image:
            raise RuntimeError('An IMAGE argument is required.')
        check_dependencies(IMAGE_CUSTOMIZE_CMDS)
        print(f'Customizing image: {args.image}')
        customize_image(args.image, cfg, fmt=args.format)
        return 0


class ImageModalCLI(scfg.ModalCLI):
    """Manage cloud images."""

    download = ImageDownloadCLI
    customize = ImageCustomizeCLI
