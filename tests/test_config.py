from __future__ import annotations

from pathlib import Path

import pytest

from cvmtools.config import CvmToolsConfig, dump_toml, load, load_config, save


def test_defaults_match_fixed_host_paths() -> None:
    cfg = CvmToolsConfig()
    assert cfg.nbd.device == '/dev/nbd0'
    assert cfg.tpm.state_dir == '/tmp/vtpm'
    assert cfg.tpm.socket == '/tmp/vtpm/swtpm-sock'
    assert cfg.tpm.pid_file == '/tmp/vtpm_pid'
    assert cfg.vm.pid_file == '/tmp/qemu_pid'
    assert cfg.vm.qmp_socket == '/tmp/qemu-qmp.sock'
    assert cfg.image.datasource_list == ['NoCloud', 'Azure']
    assert cfg.image.download_attempts == 10


def test_save_and_load(tmp_path: Path) -> None:
    cfg = CvmToolsConfig()
    cfg.tpm.state_dir = str(tmp_path / 'vtpm')
    cfg.vm.memory_mb = 4096
    cfg.nbd.poll_interval = 0.1
    cfg.cloud_init.ssh_import_ids = ['gh:octocat']
    cfg.verbosity = 2
    path = tmp_path / 'cfg.toml'
    save(path, cfg)
    text = path.read_text()
    assert '[tpm]' in text
    assert 'verbosity = 2' in text
    loaded = load(path)
    assert loaded == cfg


def test_dump_toml_omits_default_verbosity() -> None:
    assert 'verbosity' not in dump_toml(CvmToolsConfig())


def test_load_config_default_missing_uses_defaults(
    tmp_path, monkeypatch
) -> None:
    monkeypatch.chdir(tmp_path)
    assert load_config(None) == CvmToolsConfig().expanded_paths()


def test_load_config_explicit_missing_errors(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / 'nope.toml'))


def test_expanded_paths(monkeypatch) -> None:
    monkeypatch.setenv('HOME', '/home/tester')
    cfg = CvmToolsConfig()
    cfg.tpm.state_dir = '~/vtpm'
    cfg.paths.work_dir = '~/work'
    cfg.expanded_paths()
    assert cfg.tpm.state_dir == '/home/tester/vtpm'
    assert cfg.paths.work_dir == '/home/tester/work'
