"""Typed configuration for image, vTPM, and VM paths with TOML load/save."""

from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .util import expand

DEFAULT_CONFIG_NAME = '.cvmtools.toml'

CVM_IMAGE_URN_TEMPLATE = (
    'Canonical:0001-com-ubuntu-confidential-vm-{suite}:22_04-lts-cvm:latest'
)


@dataclass
class PathsConfig:
    # Parent for temporary mountpoints and user-data; empty means $TMPDIR.
    work_dir: str = ''


@dataclass
class NbdConfig:
    device: str = '/dev/nbd0'
    partition: int = 1
    poll_retries: int = 20
    poll_interval: float = 0.05


@dataclass
class TpmConfig:
    state_dir: str = '/tmp/vtpm'
    socket: str = '/tmp/vtpm/swtpm-sock'
    pid_file: str = '/tmp/vtpm_pid'
    srk_ctx: str = 'srk.ctx'
    srk_pub: str = 'srk.pub'
    poll_retries: int = 20
    poll_interval: float = 0.05


@dataclass
class VMConfig:
    cpu: str = 'host'
    machine: str = 'type=q35,accel=kvm'
    memory_mb: int = 2048
    ssh_port: int = 2222
    pid_file: str = '/tmp/qemu_pid'
    qmp_socket: str = '/tmp/qemu-qmp.sock'
    seed_image: str = 'seed.img'
    ovmf_code: str = '/usr/share/OVMF/OVMF_CODE_4M.ms.fd'
    ovmf_vars_template: str = '/usr/share/OVMF/OVMF_VARS_4M.ms.fd'
    ovmf_vars: str = '/tmp/OVMF_VARS.ms.fd'


@dataclass
class ImageConfig:
    suite: str = 'jammy'
    # Empty means infer from the file suffix (raw, vpc for .vhd, qcow2).
    format: str = ''
    masked_services: list[str] = field(default_factory=lambda: ['walinuxagent'])
    datasource_list: list[str] = field(
        default_factory=lambda: ['NoCloud', 'Azure']
    )
    azure_location: str = 'northeurope'
    azure_group: str = 'cvm-tools-rg4'
    azure_disk: str = 'cvm-tools-disk'
    urn_template: str = CVM_IMAGE_URN_TEMPLATE
    sas_duration_s: int = 86400
    max_bytes: int = 4 * 1024**3
    download_attempts: int = 10


@dataclass
class CloudInitConfig:
    ssh_import_ids: list[str] = field(default_factory=list)


@dataclass
class CvmToolsConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    nbd: NbdConfig = field(default_factory=NbdConfig)
    tpm: TpmConfig = field(default_factory=TpmConfig)
    vm: VMConfig = field(default_factory=VMConfig)
    image: ImageConfig = field(default_factory=ImageConfig)
    cloud_init: CloudInitConfig = field(default_factory=CloudInitConfig)
    verbosity: int = 1

    def expanded_paths(self) -> 'CvmToolsConfig':
        self.paths.work_dir = (
            expand(self.paths.work_dir) if self.paths.work_dir else ''
        )
        for attr in ('state_dir', 'socket', 'pid_file', 'srk_ctx', 'srk_pub'):
            setattr(self.tpm, attr, expand(getattr(self.tpm, attr)))
        for attr in (
            'pid_file',
            'qmp_socket',
            'seed_image',
            'ovmf_code',
            'ovmf_vars_template',
            'ovmf_vars',
        ):
            setattr(self.vm, attr, expand(getattr(self.vm, attr)))
        return self


SECTIONS = ('paths', 'nbd', 'tpm', 'vm', 'image', 'cloud_init')


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def _emit_toml_kv(lines: list[str], key: str, val: object) -> None:
    if isinstance(val, bool):
        lines.append(f'{key} = {"true" if val else "false"}')
    elif isinstance(val, (int, float)):
        lines.append(f'{key} = {val}')
    elif isinstance(val, list):
        parts = [f'"{_toml_escape(str(item))}"' for item in val]
        lines.append(f'{key} = [{", ".join(parts)}]')
    else:
        lines.append(f'{key} = "{_toml_escape(str(val))}"')


def dump_toml(cfg: CvmToolsConfig) -> str:
    d = asdict(cfg)
    lines: list[str] = []
    # Top-level keys must precede the first table header.
    if cfg.verbosity != 1:
        lines.append(f'verbosity = {cfg.verbosity}')
        lines.append('')
    for section in SECTIONS:
        lines.append(f'[{section}]')
        for k, v in d[section].items():
            _emit_toml_kv(lines, k, v)
        lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def _cfg_from_dict(raw: dict) -> CvmToolsConfig:
    cfg = CvmToolsConfig()
    for section in SECTIONS:
        body = raw.get(section, None)
        if isinstance(body, dict):
            obj = getattr(cfg, section)
            for k, v in body.items():
                if hasattr(obj, k):
                    setattr(obj, k, v)
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def load(path: Path) -> CvmToolsConfig:
    raw = tomllib.loads(Path(path).read_text(encoding='utf-8'))
    return _cfg_from_dict(raw)


def save(path: Path, cfg: CvmToolsConfig) -> None:
    Path(path).write_text(dump_toml(cfg), encoding='utf-8')


def config_path(p: str | None) -> Path:
    return Path(p or DEFAULT_CONFIG_NAME).resolve()


def load_config(p: str | None = None) -> CvmToolsConfig:
    """
    Load config from ``p`` or the default file in the working directory.

    A missing default file yields the built-in defaults; a missing file that
    was explicitly requested is an error.
    """
    path = config_path(p)
    if not path.exists():
        if p is not None:
            raise FileNotFoundError(f'Config not found: {path}')
        return CvmToolsConfig().expanded_paths()
    return load(path).expanded_paths()
