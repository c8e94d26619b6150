from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Decision = Literal["allow", "deny", "needs_approval"]
RiskLevel = Literal["low", "medium", "high", "critical"]
PatternSeverity = Literal["always_block", "needs_approval"]
ThreatSeverity = Literal["low", "medium", "high"]
ContentSource = Literal["user", "external"]


# --- Commands and permissions ---
class ParsedCommand(BaseModel):
    binary: str
    args: List[str] = Field(default_factory=list)
    raw_command: str
    # Later `|` stages of the same segment. Always flat.
    pipes: List[ParsedCommand] = Field(default_factory=list)
    has_redirects: bool = False
    has_sudo: bool = False
    redirect_targets: List[str] = Field(default_factory=list)
    env_assignments: List[str] = Field(default_factory=list)

    def stages(self) -> List[ParsedCommand]:
        return [self, *self.pipes]


ParsedCommand.model_rebuild()


class Overrides(BaseModel):
    model_config = ConfigDict(frozen=True)

    shell_allow: List[str] = Field(default_factory=list)
    shell_block: List[str] = Field(default_factory=list)
    dir_allow: List[str] = Field(default_factory=list)
    dir_block: List[str] = Field(default_factory=list)
    domain_allow: List[str] = Field(default_factory=list)
    domain_block: List[str] = Field(default_factory=list)


class PermissionDecision(BaseModel):
    decision: Decision
    reason: str
    risk_level: Optional[RiskLevel] = None

    @property
    def allowed(self) -> bool:
        return self.decision == "allow"


# --- Sandbox ---
class SandboxOptions(BaseModel):
    cwd: Optional[str] = None
    timeout_ms: int = Field(default=30_000, gt=0)
    max_output_bytes: int = Field(default=1_048_576, gt=0)
    env: Dict[str, str] = Field(default_factory=dict)


class SandboxResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False
    truncated: bool = False


# --- Injection scanning ---
class Threat(BaseModel):
    type: str
    description: str
    severity: ThreatSeverity


class SanitizationResult(BaseModel):
    is_clean: bool
    threats: List[Threat] = Field(default_factory=list)
    # The detector flags, it never rewrites.
    sanitized_input: str


# --- Audit and tool results ---
class AuditEntry(BaseModel):
    action_type: str
    detail: str
    allowed: bool
    security_level: int
    reason: str
    task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ToolResult(BaseModel):
    success: bool
    output: str = ""
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
