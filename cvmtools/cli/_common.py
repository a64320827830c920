"""Shared CLI option base class and config loading."""

from __future__ import annotations

import scriptconfig as scfg
from loguru import logger

from ..config import CvmToolsConfig, load_config

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help='Path to config TOML (default: .cvmtools.toml if present).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


def _load_cfg(config_path: str | None) -> CvmToolsConfig:
    cfg = load_config(config_path)
    log.debug('Loaded config (explicit path: {})', config_path or '(none)')
    return cfg
