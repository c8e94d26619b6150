from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Optional

import pytest

from agent_guard.models import SandboxOptions, SandboxResult
from agent_guard.sandbox import SAFE_POSIX_PATH, TRUNCATION_MARKER, create_sanitized_env, execute_in_sandbox


def _run_python(code: str, options: Optional[SandboxOptions] = None) -> SandboxResult:
    return asyncio.run(execute_in_sandbox(sys.executable, ["-c", code], options))


# --- Environment ---
def test_sanitized_env_strips_secrets_and_replaces_path() -> None:
    base = {
        "PATH": "/home/u/evil-bin:/usr/bin",
        "HOME": "/home/u",
        "LANG": "C.UTF-8",
        "OPENAI_API_KEY": "sk-1",
        "GITHUB_TOKEN": "ghp_x",
        "DB_PASSWORD": "hunter2",
        "AWS_REGION": "eu-west-1",
        "DATABASE_URL": "postgres://u:p@db/x",
        "LD_PRELOAD": "/tmp/evil.so",
        "DYLD_INSERT_LIBRARIES": "/tmp/evil.dylib",
    }
    env = create_sanitized_env(base=base, platform="linux")
    assert env == {"HOME": "/home/u", "LANG": "C.UTF-8", "PATH": SAFE_POSIX_PATH}


def test_sanitized_env_merges_additional_last() -> None:
    env = create_sanitized_env({"GREETING": "hi", "PATH": "/opt/tool/bin"}, base={"HOME": "/h"}, platform="linux")
    assert env["GREETING"] == "hi"
    assert env["PATH"] == "/opt/tool/bin"


def test_sanitized_env_returns_fresh_dict() -> None:
    base = {"HOME": "/h"}
    first = create_sanitized_env(base=base, platform="linux")
    first["HOME"] = "/changed"
    assert create_sanitized_env(base=base, platform="linux")["HOME"] == "/h"
    assert base == {"HOME": "/h"}


def test_sanitized_env_windows_path() -> None:
    base = {
        "Path": "C:\\evil;C:\\Windows",
        "SystemRoot": "D:\\Win",
        "ComSpec": "D:\\Win\\System32\\cmd.exe",
        "USERPROFILE": "C:\\Users\\u",
        "AZURE_CLIENT_SECRET": "x",
    }
    env = create_sanitized_env(base=base, platform="win32")
    assert "Path" not in env
    assert env["PATH"] == "D:\\Win\\System32;D:\\Win;D:\\Win\\System32\\Wbem"
    assert env["SystemRoot"] == "D:\\Win"
    assert env["ComSpec"] == "D:\\Win\\System32\\cmd.exe"
    assert env["USERPROFILE"] == "C:\\Users\\u"
    assert "AZURE_CLIENT_SECRET" not in env


def test_sanitized_env_defaults_to_process_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_GUARD_TEST_PLAIN", "visible")
    monkeypatch.setenv("AGENT_GUARD_TEST_TOKEN", "hidden")
    env = create_sanitized_env(platform="linux")
    assert env["AGENT_GUARD_TEST_PLAIN"] == "visible"
    assert "AGENT_GUARD_TEST_TOKEN" not in env


# --- Execution ---
def test_execute_captures_stdout_and_exit_code() -> None:
    result = _run_python("print('hello')")
    assert result.exit_code == 0
    assert result.stdout.strip() == "hello"
    assert result.timed_out is False
    assert result.truncated is False


def test_execute_reports_nonzero_exit_and_stderr() -> None:
    result = _run_python("import sys; sys.stderr.write('boom'); sys.exit(3)")
    assert result.exit_code == 3
    assert result.stderr == "boom"


def test_execute_timeout_kills_child() -> None:
    started = time.monotonic()
    result = _run_python("import time; time.sleep(30)", SandboxOptions(timeout_ms=200))
    assert result.timed_out is True
    assert result.exit_code != 0
    assert time.monotonic() - started < 10


def test_execute_truncates_output() -> None:
    result = _run_python("print('x' * 5000)", SandboxOptions(max_output_bytes=100))
    assert result.truncated is True
    assert result.stdout.endswith(TRUNCATION_MARKER)
    assert len(result.stdout) == 100 + len(TRUNCATION_MARKER)


def test_execute_runs_in_requested_cwd(tmp_path: Path) -> None:
    result = _run_python("import os; print(os.getcwd())", SandboxOptions(cwd=str(tmp_path)))
    assert os.path.realpath(result.stdout.strip()) == os.path.realpath(str(tmp_path))


def test_execute_child_env_is_sanitized(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MY_SERVICE_API_KEY", "s3cret")
    code = "import os; print(os.environ.get('MY_SERVICE_API_KEY'), os.environ.get('GREETING'))"
    result = _run_python(code, SandboxOptions(env={"GREETING": "hello"}))
    assert result.stdout.strip() == "None hello"


def test_execute_spawn_failure_is_a_result() -> None:
    result = asyncio.run(execute_in_sandbox("/nonexistent/agent-guard-missing-binary", []))
    assert result.exit_code == 1
    assert result.stderr
    assert result.timed_out is False


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_execute_maps_signal_to_shell_exit_code() -> None:
    result = _run_python("import os, signal; os.kill(os.getpid(), signal.SIGTERM)")
    assert result.exit_code == 143


def test_execute_stdin_is_empty() -> None:
    result = _run_python("import sys; print(repr(sys.stdin.read()))")
    assert result.stdout.strip() == "''"
