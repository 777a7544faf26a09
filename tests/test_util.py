from __future__ import annotations

import pytest

from claude_vm.util import CmdError, CmdTimeoutError, shell_join
from claude_vm.util import run_cmd as _run_cmd


def test_shell_join_quotes() -> None:
    cmd = ["limactl", "shell", "vm a", "c'd"]
    s = shell_join(cmd)
    assert "'vm a'" in s
    assert s.startswith("limactl shell")


def test_run_cmd_success_and_failure() -> None:
    ok = _run_cmd(["bash", "-c", "printf ok"], check=True, capture=True)
    assert ok.code == 0
    assert ok.stdout == "ok"
    bad = _run_cmd(["bash", "-c", "exit 7"], check=False, capture=True)
    assert bad.code == 7
    with pytest.raises(CmdError) as info:
        _run_cmd(["bash", "-c", "echo boom >&2; exit 9"], check=True, capture=True)
    assert info.value.result.code == 9
    assert "boom" in str(info.value)


def test_run_cmd_timeout() -> None:
    with pytest.raises(CmdTimeoutError):
        _run_cmd(["sleep", "5"], check=True, capture=True, timeout=0.2)


def test_run_cmd_missing_executable() -> None:
    with pytest.raises(FileNotFoundError):
        _run_cmd(["claude-vm-definitely-not-a-binary"], check=False)


def test_run_cmd_passes_env_and_cwd(tmp_path) -> None:
    res = _run_cmd(
        ["bash", "-c", 'printf "%s:%s" "$GREETING" "$(pwd)"'],
        env={"GREETING": "hi", "PATH": "/usr/bin:/bin"},
        cwd=tmp_path,
    )
    assert res.stdout == f"hi:{tmp_path.resolve()}"
