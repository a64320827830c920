"""Shared fakes for tests that drive external host tools."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from cvmtools.config import CvmToolsConfig
from cvmtools.errors import ExternalCommandError
from cvmtools.util import CmdResult


class FakeHost:
    """
    Stand-in for the NBD / mount / chroot tools used by image customization.

    qemu-nbd creates and removes the partition node, mount/umount track a
    mount table, and writes below a mountpoint land in ``rootfs`` so the
    mountpoint directory itself stays empty, as with a real mount.
    """

    def __init__(self, tmp_path: Path) -> None:
        self.rootfs = tmp_path / 'rootfs'
        self.rootfs.mkdir()
        self.mounts: dict[Path, Path] = {}
        self.calls: list[list[str]] = []
        self.fail_on: Callable[[list[str]], bool] | None = None

    def _in_root(self, path: str) -> Path:
        p = Path(path)
        for mnt in self.mounts:
            if p == mnt or mnt in p.parents:
                return self.rootfs / p.relative_to(mnt)
        return p

    def run_cmd(self, cmd, **kwargs) -> CmdResult:
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        if self.fail_on is not None and self.fail_on(cmd):
            raise ExternalCommandError(cmd[0], cmd[1:], 1, 'injected failure')
        prog = cmd[0]
        if prog == 'qemu-nbd' and cmd[1] == '--disconnect':
            Path(cmd[2] + 'p1').unlink(missing_ok=True)
        elif prog == 'qemu-nbd':
            device = cmd[3].split('=', 1)[1]
            Path(device + 'p1').touch()
        elif prog == 'mount':
            self.mounts[Path(cmd[2])] = Path(cmd[1])
        elif prog == 'umount':
            self.mounts.pop(Path(cmd[1]))
        elif prog == 'mkdir':
            self._in_root(cmd[-1]).mkdir(parents=True, exist_ok=True)
        elif prog == 'tee':
            self._in_root(cmd[1]).write_text(kwargs['input_text'])
        return CmdResult(0, '', '')

    def programs(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def fake_host(monkeypatch, tmp_path) -> FakeHost:
    host = FakeHost(tmp_path)
    monkeypatch.setattr('cvmtools.nbd.run_cmd', host.run_cmd)
    monkeypatch.setattr('cvmtools.image.run_cmd', host.run_cmd)
    monkeypatch.setattr('cvmtools.poll.time.sleep', lambda _: None)
    return host


@pytest.fixture
def cfg(tmp_path) -> CvmToolsConfig:
    """Config with every host path redirected below ``tmp_path``."""
    cfg = CvmToolsConfig()
    cfg.paths.work_dir = str(tmp_path / 'work')
    cfg.nbd.device = str(tmp_path / 'nbd0')
    cfg.nbd.poll_interval = 0
    cfg.tpm.state_dir = str(tmp_path / 'vtpm')
    cfg.tpm.socket = str(tmp_path / 'vtpm' / 'swtpm-sock')
    cfg.tpm.pid_file = str(tmp_path / 'vtpm_pid')
    cfg.tpm.srk_ctx = str(tmp_path / 'srk.ctx')
    cfg.tpm.srk_pub = str(tmp_path / 'srk.pub')
    cfg.tpm.poll_interval = 0
    cfg.vm.pid_file = str(tmp_path / 'qemu_pid')
    cfg.vm.qmp_socket = str(tmp_path / 'qemu-qmp.sock')
    cfg.vm.seed_image = str(tmp_path / 'seed.img')
    cfg.vm.ovmf_code = str(tmp_path / 'OVMF_CODE_4M.ms.fd')
    cfg.vm.ovmf_vars_template = str(tmp_path / 'OVMF_VARS_4M.ms.fd')
    cfg.vm.ovmf_vars = str(tmp_path / 'OVMF_VARS.ms.fd')
    return cfg
