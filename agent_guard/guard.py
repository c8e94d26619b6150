from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

from pydantic import BaseModel

from .audit import safe_append
from .command_parser import parse_command
from .config import SecurityConfig
from .injection import DEFAULT_TOOL_NAMES, check_for_injection
from .models import AuditEntry, SandboxOptions, SanitizationResult, ToolResult
from .policy import PermissionsEngine
from .sandbox import execute_in_sandbox
from .spotlight import is_content_too_long, wrap_untrusted_content

logger = logging.getLogger(__name__)


# --- Tool entry points ---
class GuardedContent(BaseModel):
    content: str
    sanitization: SanitizationResult
    truncated: bool = False


def _format_output(stdout: str, stderr: str) -> str:
    if not stderr:
        return stdout
    if not stdout:
        return f"[stderr]\n{stderr}"
    return f"{stdout}\n[stderr]\n{stderr}"


async def execute_shell_command(
    command: str,
    config: Optional[SecurityConfig] = None,
    *,
    engine: Optional[PermissionsEngine] = None,
    cwd: Optional[str] = None,
    task_id: Optional[str] = None,
    approved: bool = False,
    timeout_ms: int = 30_000,
    max_output_bytes: int = 1_048_576,
) -> ToolResult:
    """
    Check `command` and, when permitted, run it in the sandbox.

    A needs_approval decision is returned as an approval request unless
    the caller passes `approved=True` after asking the user. Deny is final.
    """
    config = config or SecurityConfig()
    engine = engine or PermissionsEngine(cwd=cwd)
    decision = engine.check_command(command, config.level, config.overrides, task_id=task_id)
    meta: Dict[str, Any] = {"decision": decision.decision, "risk_level": decision.risk_level}

    if decision.decision == "deny":
        return ToolResult(success=False, error=f"Command denied: {decision.reason}", metadata=meta)
    if decision.decision == "needs_approval" and not approved:
        meta["requires_approval"] = True
        return ToolResult(success=False, error=f"Command requires approval: {decision.reason}", metadata=meta)

    segments = parse_command(command)
    if len(segments) != 1 or segments[0].pipes or segments[0].has_redirects:
        return ToolResult(
            success=False,
            error="Chained, piped and redirecting commands need a shell, which the sandbox does not provide",
            metadata=meta,
        )
    cmd = segments[0]
    if not cmd.binary:
        return ToolResult(success=False, error="Nothing to execute", metadata=meta)
    if cmd.has_sudo:
        return ToolResult(success=False, error="sudo cannot be used inside the sandbox", metadata=meta)

    env: Dict[str, str] = {}
    for assignment in cmd.env_assignments:
        name, value = assignment.split("=", 1)
        env[name.rstrip("+")] = value

    result = await execute_in_sandbox(
        cmd.binary,
        cmd.args,
        SandboxOptions(cwd=cwd, timeout_ms=timeout_ms, max_output_bytes=max_output_bytes, env=env),
    )

    success = result.exit_code == 0 and not result.timed_out
    if result.timed_out:
        error: Optional[str] = f"Command timed out after {timeout_ms}ms"
    elif result.exit_code != 0:
        error = f"Command exited with code {result.exit_code}"
    else:
        error = None

    safe_append(
        engine.audit,
        AuditEntry(
            action_type="shell_execution",
            detail=command,
            allowed=True,
            security_level=config.level,
            reason=error or "Command completed",
            task_id=task_id,
        ),
    )
    meta.update(exit_code=result.exit_code, timed_out=result.timed_out, truncated=result.truncated)
    return ToolResult(success=success, output=_format_output(result.stdout, result.stderr), error=error, metadata=meta)


def guard_external_content(
    content: str, source_label: str, tool_names: Sequence[str] = DEFAULT_TOOL_NAMES
) -> GuardedContent:
    """Scan external content for injection and wrap it in trust-boundary markers."""
    sanitization = check_for_injection(content, "external", tool_names)
    logger.debug("Guarded %d chars of external content from %s", len(content), source_label)
    return GuardedContent(
        content=wrap_untrusted_content(content, source_label),
        sanitization=sanitization,
        truncated=is_content_too_long(content),
    )
