from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import subprocess
import sys
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .models import SandboxOptions, SandboxResult

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[...output truncated...]"
SAFE_POSIX_PATH = "/usr/local/bin:/usr/bin:/bin"

_READ_CHUNK = 65_536
_KILL_GRACE_SEC = 2.0

_SENSITIVE_ENV_RE = re.compile(
    r"key|secret|token|passw(?:or)?d|auth|credential|private"
    r"|^(?:aws|azure|google|gcp|anthropic|openai)_"
    r"|^(?:database|redis)_url$"
    r"|^(?:ld|dyld)_",
    re.IGNORECASE,
)


# --- Environment ---
def create_sanitized_env(
    additional: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    *,
    platform: Optional[str] = None,
) -> Dict[str, str]:
    """
    Fresh child environment built from `base` (default: os.environ).

    Credential-looking names and loader injection variables are dropped,
    PATH is replaced by a minimal system list, and `additional` is merged
    last so an explicit pass-through always wins.
    """
    source = os.environ if base is None else base
    platform = platform or sys.platform
    env = {k: v for k, v in source.items() if not _SENSITIVE_ENV_RE.search(k) and k.upper() != "PATH"}

    if platform.startswith("win"):
        root = source.get("SystemRoot") or source.get("SYSTEMROOT") or r"C:\Windows"
        env["PATH"] = f"{root}\\System32;{root};{root}\\System32\\Wbem"
        env["SystemRoot"] = root
        comspec = source.get("ComSpec") or source.get("COMSPEC")
        if comspec:
            env["ComSpec"] = comspec
    else:
        env["PATH"] = SAFE_POSIX_PATH

    if additional:
        env.update(additional)
    return env


# --- Output capture ---
class _Capture:
    """Keeps at most `limit` bytes but reads the pipe to EOF so the child never blocks."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.truncated = False

    async def drain(self, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            room = self.limit - len(self.data)
            if room > 0:
                self.data.extend(chunk[:room])
            if len(chunk) > room:
                self.truncated = True

    def text(self) -> str:
        out = self.data.decode("utf-8", errors="replace")
        return out + TRUNCATION_MARKER if self.truncated else out


def _spawn_kwargs() -> Dict[str, Any]:
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        if sys.platform == "win32":
            proc.kill()
        else:
            # start_new_session makes the child its own group leader
            os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        logger.debug("Process group %d already gone", proc.pid)


def _exit_code(returncode: Optional[int]) -> int:
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 - returncode
    return returncode


# --- Execution ---
async def execute_in_sandbox(
    binary: str, args: Sequence[str], options: Optional[SandboxOptions] = None
) -> SandboxResult:
    """Run `binary` with `args` (no shell). Never raises for spawn failures or timeouts."""
    opts = options or SandboxOptions()
    cwd = opts.cwd or os.getcwd()
    timeout = opts.timeout_ms / 1000
    logger.debug("Sandbox start: %s %s (cwd=%s, timeout=%sms)", binary, list(args), cwd, opts.timeout_ms)

    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            *args,
            cwd=cwd,
            env=create_sanitized_env(opts.env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **_spawn_kwargs(),
        )
    except (OSError, ValueError) as exc:
        logger.error("Sandbox spawn failed for %s: %s", binary, exc)
        return SandboxResult(stderr=str(exc), exit_code=1)

    out, err = _Capture(opts.max_output_bytes), _Capture(opts.max_output_bytes)
    tasks: List[asyncio.Future] = [
        asyncio.ensure_future(out.drain(proc.stdout)),
        asyncio.ensure_future(err.drain(proc.stderr)),
        asyncio.ensure_future(proc.wait()),
    ]
    timed_out = False
    try:
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            timed_out = True
            logger.warning("Sandbox timeout after %sms: %s", opts.timeout_ms, binary)
            _kill_group(proc)
            _, pending = await asyncio.wait(pending, timeout=_KILL_GRACE_SEC)
            for task in pending:
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    except asyncio.CancelledError:
        _kill_group(proc)
        raise

    result = SandboxResult(
        stdout=out.text(),
        stderr=err.text(),
        exit_code=_exit_code(proc.returncode),
        timed_out=timed_out,
        truncated=out.truncated or err.truncated,
    )
    if result.truncated:
        logger.info("Sandbox output truncated at %d bytes: %s", opts.max_output_bytes, binary)
    logger.debug("Sandbox done: %s exit=%d", binary, result.exit_code)
    return result
