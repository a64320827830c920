from __future__ import annotations

import os

import pytest

from cvmtools.errors import ExternalCommandError
from cvmtools.util import pid_alive, read_pid, shell_join
from cvmtools.util import run_cmd as _run_cmd


def test_shell_join_quotes() -> None:
    cmd = ["echo", "a b", "c'd"]
    s = shell_join(cmd)
    assert "a b" in s
    assert "echo" in s


def test_run_cmd_success_and_failure() -> None:
    ok = _run_cmd(["bash", "-lc", "printf ok"], check=True, capture=True)
    assert ok.code == 0
    assert ok.stdout == "ok"
    bad = _run_cmd(["bash", "-lc", "exit 7"], check=False, capture=True)
    assert bad.code == 7
    with pytest.raises(ExternalCommandError):
        _run_cmd(["bash", "-lc", "exit 9"], check=True, capture=True)


def test_run_cmd_error_carries_program_args_code_and_stderr() -> None:
    with pytest.raises(ExternalCommandError) as info:
        _run_cmd(["bash", "-c", "echo boom >&2; exit 3"], check=True)
    err = info.value
    assert err.program == "bash"
    assert err.arguments == ["-c", "echo boom >&2; exit 3"]
    assert err.exit_code == 3
    assert "boom" in err.stderr
    assert "code=3" in str(err)


def test_run_cmd_missing_program() -> None:
    with pytest.raises(ExternalCommandError) as info:
        _run_cmd(["definitely-not-a-real-binary-cvmtools"], check=True)
    assert info.value.exit_code == 127
    res = _run_cmd(["definitely-not-a-real-binary-cvmtools"], check=False)
    assert res.code == 127


def test_run_cmd_sudo_prefix_when_non_root(monkeypatch) -> None:
    calls = []

    class P:
        returncode = 0
        stdout = ""
        stderr = ""

    monkeypatch.setattr("cvmtools.util.os.geteuid", lambda: 1000)
    monkeypatch.setattr(
        "cvmtools.util.subprocess.run",
        lambda cmd, **kwargs: (calls.append(cmd) or P()),
    )
    _run_cmd(["modprobe", "nbd"], sudo=True, check=True, capture=True)
    assert calls[0][:3] == ["sudo", "-n", "modprobe"]


def test_run_cmd_no_sudo_prefix_when_root(monkeypatch) -> None:
    calls = []

    class P:
        returncode = 0
        stdout = ""
        stderr = ""

    monkeypatch.setattr("cvmtools.util.os.geteuid", lambda: 0)
    monkeypatch.setattr(
        "cvmtools.util.subprocess.run",
        lambda cmd, **kwargs: (calls.append(cmd) or P()),
    )
    _run_cmd(["modprobe", "nbd"], sudo=True, check=True, capture=True)
    assert calls[0] == ["modprobe", "nbd"]


def test_read_pid(tmp_path) -> None:
    pid_file = tmp_path / "pid"
    assert read_pid(pid_file) is None
    pid_file.write_text("1234\n")
    assert read_pid(pid_file) == 1234
    pid_file.write_text("garbage")
    assert read_pid(pid_file) is None


def test_pid_alive() -> None:
    assert pid_alive(os.getpid()) is True
    assert pid_alive(0) is False
    assert pid_alive(-1) is False
