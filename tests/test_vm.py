"""Tests for the QEMU launch orchestrator."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

from cvmtools.errors import ExternalCommandError, LaunchError, ProcessStopError
from cvmtools.util import CmdResult
from cvmtools.vm import (
    copy_firmware_vars,
    kill_vm,
    launch_vm,
    qemu_args,
    validate_launch_inputs,
    vm_status,
)


def _sha(path: Path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


@pytest.fixture
def vm_env(cfg, tmp_path, monkeypatch):
    Path(cfg.vm.ovmf_code).write_bytes(b'code')
    Path(cfg.vm.ovmf_vars_template).write_bytes(b'pristine-vars')
    disk = tmp_path / 'jammy.img'
    disk.write_bytes(b'disk')
    seed = Path(cfg.vm.seed_image)
    seed.write_bytes(b'seed')
    calls = []

    def fake_run_cmd(cmd, **kwargs):
        calls.append(list(cmd))
        return CmdResult(0, '', '')

    monkeypatch.setattr('cvmtools.vm.run_cmd', fake_run_cmd)
    return cfg, disk, seed, calls


def test_qemu_args(cfg) -> None:
    args = qemu_args(cfg, '/img/jammy.img', '/img/seed.img', '/tmp/vtpm/swtpm-sock', '/tmp/vars.fd')
    assert args[0] == 'qemu-system-x86_64'

    def after(flag: str) -> list[str]:
        return [args[i + 1] for i, a in enumerate(args) if a == flag]

    assert after('-m') == ['2048']
    assert '-daemonize' in args
    assert '-snapshot' in args
    assert after('-pidfile') == [cfg.vm.pid_file]
    assert after('-qmp') == [f'unix:{cfg.vm.qmp_socket},server=on,wait=off']
    assert after('-netdev') == ['id=net00,type=user,hostfwd=tcp::2222-:22']
    assert after('-chardev') == ['socket,id=chrtpm,path=/tmp/vtpm/swtpm-sock.ctrl']
    assert after('-tpmdev') == ['emulator,id=tpm0,chardev=chrtpm']
    assert after('-drive') == [
        'if=virtio,format=raw,file=/img/jammy.img',
        'if=virtio,format=raw,file=/img/seed.img',
        f'if=pflash,format=raw,unit=0,file={cfg.vm.ovmf_code},readonly=on',
        'if=pflash,format=raw,unit=1,file=/tmp/vars.fd',
    ]


def test_launch_missing_disk_fails_fast(vm_env, tmp_path) -> None:
    cfg, _, seed, calls = vm_env
    with pytest.raises(LaunchError, match='Disk image not found'):
        launch_vm(cfg, tmp_path / 'missing.img', seed)
    assert calls == []
    assert not Path(cfg.vm.pid_file).exists()
    assert not Path(cfg.vm.ovmf_vars).exists()


def test_validate_launch_inputs_needs_no_seed(cfg, tmp_path) -> None:
    disk = tmp_path / 'jammy.img'
    with pytest.raises(LaunchError, match='Disk image not found'):
        validate_launch_inputs(cfg, disk)
    disk.write_bytes(b'disk')
    assert not Path(cfg.vm.seed_image).exists()
    assert validate_launch_inputs(cfg, disk) == disk
    Path(cfg.vm.pid_file).write_text(f'{os.getpid()}\n')
    with pytest.raises(LaunchError, match='already running'):
        validate_launch_inputs(cfg, disk)


def test_launch_copies_fresh_vars_each_time(vm_env) -> None:
    cfg, disk, seed, calls = vm_env
    template = Path(cfg.vm.ovmf_vars_template)
    before = _sha(template)
    for _ in range(3):
        launch_vm(cfg, disk, seed)
        copy = Path(cfg.vm.ovmf_vars)
        assert copy.read_bytes() == b'pristine-vars'
        # the guest mutates its own copy
        copy.write_bytes(b'guest-written-vars')
    assert _sha(template) == before
    assert len(calls) == 3
    assert f'if=pflash,format=raw,unit=1,file={cfg.vm.ovmf_vars}' in calls[0]
    assert f'if=virtio,format=raw,file={disk}' in calls[0]


def test_copy_firmware_vars_refuses_to_overwrite_template(tmp_path) -> None:
    template = tmp_path / 'vars.fd'
    template.write_bytes(b'x')
    with pytest.raises(LaunchError):
        copy_firmware_vars(template, template)
    with pytest.raises(LaunchError, match='failed to copy OVMF vars'):
        copy_firmware_vars(tmp_path / 'missing.fd', tmp_path / 'out.fd')


def test_launch_qemu_failure(vm_env, monkeypatch) -> None:
    cfg, disk, seed, _ = vm_env

    def failing(cmd, **kwargs):
        raise ExternalCommandError(cmd[0], cmd[1:], 1, 'kvm: permission denied')

    monkeypatch.setattr('cvmtools.vm.run_cmd', failing)
    with pytest.raises(LaunchError, match='permission denied'):
        launch_vm(cfg, disk, seed)


def test_launch_refuses_when_vm_running(vm_env) -> None:
    cfg, disk, seed, calls = vm_env
    Path(cfg.vm.pid_file).write_text(f'{os.getpid()}\n')
    with pytest.raises(LaunchError, match='already running'):
        launch_vm(cfg, disk, seed)
    assert calls == []


def test_launch_replaces_stale_pid_file(vm_env, monkeypatch) -> None:
    cfg, disk, seed, calls = vm_env
    Path(cfg.vm.pid_file).write_text('4242\n')
    monkeypatch.setattr('cvmtools.vm.pid_alive', lambda pid: False)
    launch_vm(cfg, disk, seed)
    assert len(calls) == 1
    assert not Path(cfg.vm.pid_file).exists()


def test_kill_vm(cfg, monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(
        'cvmtools.tpm.run_cmd',
        lambda cmd, **kw: (calls.append(cmd) or CmdResult(0, '', '')),
    )
    Path(cfg.vm.pid_file).write_text('777\n')
    assert kill_vm(cfg) == 777
    assert calls == [['kill', '777']]
    assert not Path(cfg.vm.pid_file).exists()
    with pytest.raises(ProcessStopError, match='Failed to stop VM'):
        kill_vm(cfg)


def test_vm_status(cfg, monkeypatch) -> None:
    assert vm_status(cfg) == 'VM not running'
    Path(cfg.vm.pid_file).write_text(f'{os.getpid()}\n')
    assert vm_status(cfg).startswith(f'VM is running, pid: {os.getpid()}')
    monkeypatch.setattr('cvmtools.vm.pid_alive', lambda pid: False)
    assert 'stale' in vm_status(cfg)
