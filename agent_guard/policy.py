from __future__ import annotations

import ipaddress
import logging
import ntpath
import posixpath
import re
import socket
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple, Union
from urllib.parse import urlsplit

from .audit import AuditSink, LoggingAuditLog, safe_append
from .command_parser import has_command_substitution, has_variable_expansion, parse_command
from .defaults import (
    BINARY_ALLOWLIST_DEFAULT,
    BLOCKED_NETWORKS,
    DIRECTORY_RULES,
    DOMAIN_RULES,
    most_severe_pattern,
)
from .models import AuditEntry, Overrides, ParsedCommand, PermissionDecision, RiskLevel
from .utils import binary_key, is_bare_name

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_NESTED_SHELLS = {"sh", "bash", "zsh", "dash", "ksh"}
_POWERSHELL = {"powershell", "pwsh"}
# Binaries whose operands name another program to run.
_WRAPPERS = {
    "env", "nohup", "time", "nice", "ionice", "timeout", "stdbuf", "xargs",
    "command", "exec", "builtin", "watch", "caffeinate",
}
_MAX_NESTING = 3

_SHELL_C_FLAG_RE = re.compile(r"^-[a-z]*c[a-z]*$", re.IGNORECASE)
_PATHLIKE_RE = re.compile(r"^(?:/|~|\.{1,2}(?:[/\\]|$)|[a-z]:(?:[\\/]|$)|\\\\)", re.IGNORECASE)
_SWITCH_RE = re.compile(r"^/[a-z?]$", re.IGNORECASE)
# Unquoted backslashes are escapes to the tokenizer, so Windows paths are
# also read from the raw stage text.
_WIN_PATH_RE = re.compile(
    r"(?<![\w$%])(?:[a-z]:\\[^\s\"'|&;<>]*|\\\\[.?]\\[^\s\"'|&;<>]+|\\\\[^\s\"'|&;<>\\]+\\[^\s\"'|&;<>]+)",
    re.IGNORECASE,
)
_WIN_FORM_RE = re.compile(r"^(?:[a-z]:|\\\\)|\\", re.IGNORECASE)
_NUMERIC_HOST_RE = re.compile(r"^(?:0x[0-9a-f]*|\d+)(?:\.(?:0x[0-9a-f]*|\d+)){0,3}$")

_SUBSTITUTION_REASON = "Command substitution ($(...), backticks or <(...)) cannot be checked before execution"


# --- Decision helpers ---
def _allow(reason: str) -> PermissionDecision:
    return PermissionDecision(decision="allow", reason=reason, risk_level="low")


def _deny(reason: str, risk: RiskLevel = "high") -> PermissionDecision:
    return PermissionDecision(decision="deny", reason=reason, risk_level=risk)


def _needs_approval(reason: str, risk: RiskLevel = "medium") -> PermissionDecision:
    return PermissionDecision(decision="needs_approval", reason=reason, risk_level=risk)


def _level_gate(level: int, what: str) -> Optional[PermissionDecision]:
    if isinstance(level, bool) or not isinstance(level, int) or not 1 <= level <= 5:
        return _deny(f"Invalid security level: {level!r}", "critical")
    if level == 1:
        return _deny(f"All {what} are blocked at security level 1", "critical")
    return None


def _by_level(level: int, reason: str) -> PermissionDecision:
    if level == 2:
        return _deny(f"{reason} (security level 2)", "medium")
    if level == 3:
        return _needs_approval(f"{reason} and requires approval (security level 3)", "medium")
    return _allow(f"Allowed at security level {level}")


def _any_match(patterns: Iterable[Pattern[str]], values: Sequence[str]) -> bool:
    return any(p.search(v) for p in patterns for v in values)


# --- Paths ---
@dataclass(frozen=True)
class _Roots:
    """Working and home directory that relative and `~` paths resolve against. None means unknown."""

    cwd: Optional[str] = None
    home: Optional[str] = None


def _climb(rel: str, base: Optional[str]) -> str:
    # An unknown base is taken to be shallow enough for every `..` to reach `/`.
    if base:
        return posixpath.normpath(posixpath.join(base.replace("\\", "/"), rel))
    return posixpath.normpath("/" + rel)


def _path_forms(path: str, roots: _Roots) -> List[str]:
    """Normalized spellings of `path` with `..`, repeated separators and `~` escapes resolved."""
    p = path.strip()
    if not p:
        return []
    forms: List[str] = []
    if _WIN_FORM_RE.search(p):
        forms.append(ntpath.normpath(p))
        p = p.replace("\\", "/")

    p = re.sub(r"^/+", "/", p)
    if p == "~" or p.startswith("~/"):
        rel = posixpath.normpath(p[2:] or ".")
        if rel == ".." or rel.startswith("../"):
            forms.append(_climb(rel, roots.home))
        else:
            forms.append("~" if rel == "." else "~/" + rel)
    elif p.startswith("/"):
        forms.append(posixpath.normpath(p))
    else:
        rel = posixpath.normpath(p)
        forms.append(rel)
        if rel == ".." or rel.startswith("../"):
            forms.append(_climb(rel, roots.cwd))
    return forms


def _is_under(form: str, root: str) -> bool:
    if _WIN_FORM_RE.search(form) or _WIN_FORM_RE.search(root):
        form, root = form.lower(), root.lower()
    if root in ("/", "\\"):
        return form.startswith(root)
    root = root.rstrip("/\\")
    return form == root or form.startswith(root + "/") or form.startswith(root + "\\")


def _under_any(forms: Sequence[str], entries: Iterable[str], roots: _Roots) -> bool:
    for entry in entries:
        for root in _path_forms(entry, roots):
            if any(_is_under(f, root) for f in forms):
                return True
    return False


def _path_always_blocked(forms: Sequence[str]) -> bool:
    return _any_match(DIRECTORY_RULES.always_blocked, forms)


def _path_allowed(forms: Sequence[str], overrides: Overrides, roots: _Roots) -> bool:
    return _any_match(DIRECTORY_RULES.default_allowed, forms) or _under_any(forms, overrides.dir_allow, roots)


def _classify_path(path: str, level: int, overrides: Overrides, roots: _Roots) -> PermissionDecision:
    forms = _path_forms(path, roots)
    if not forms:
        return _deny("Empty path", "low")
    if _path_always_blocked(forms):
        return _deny(f"Path '{path}' is in an always-blocked directory", "critical")
    if _under_any(forms, overrides.dir_block, roots):
        return _deny(f"Path '{path}' is in the user blocklist", "high")
    if _path_allowed(forms, overrides, roots):
        return _allow(f"Path '{path}' is in an allowed directory")
    return _by_level(level, f"Path '{path}' is not in allowed directories")


# --- Domains ---
def _normalize_host(domain: str) -> Optional[str]:
    s = domain.strip().lower()
    if not s:
        return None
    try:
        if "://" in s:
            host = urlsplit(s).hostname or ""
        else:
            s = re.split(r"[/?#]", s, maxsplit=1)[0].rsplit("@", 1)[-1]
            if s.startswith("["):
                end = s.find("]")
                if end < 0:
                    return None
                host = s[1:end]
            elif s.count(":") == 1:
                host = s.split(":", 1)[0]
            else:
                host = s
    except ValueError:
        return None
    return host.rstrip(".") or None


def _host_ip(host: str) -> Optional[IPAddress]:
    """IP literal behind `host`, including legacy numeric spellings like 0x7f.1 or 2130706433."""
    try:
        ip: IPAddress = ipaddress.ip_address(host)
    except ValueError:
        if not _NUMERIC_HOST_RE.match(host):
            return None
        try:
            ip = ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _host_always_blocked(host: str) -> bool:
    ip = _host_ip(host)
    candidates = [host] if ip is None else [host, str(ip)]
    if _any_match(DOMAIN_RULES.always_blocked, candidates):
        return True
    return ip is not None and any(ip in net for net in BLOCKED_NETWORKS)


def _host_matches(host: str, entries: Iterable[str]) -> bool:
    for entry in entries:
        e = _normalize_host(re.sub(r"^\*\.", "", entry.strip()))
        if e and (host == e or host.endswith("." + e)):
            return True
    return False


# --- Commands ---
def _nested_script(stage: ParsedCommand) -> Optional[str]:
    """Script text handed to `sh -c`, `cmd /c` or `powershell -Command`, if any."""
    key = binary_key(stage.binary)
    args = stage.args
    if key in _NESTED_SHELLS:
        for i, arg in enumerate(args):
            if _SHELL_C_FLAG_RE.match(arg):
                return args[i + 1] if i + 1 < len(args) else None
    elif key == "cmd":
        for i, arg in enumerate(args):
            if arg.lower() in ("/c", "/k"):
                return " ".join(args[i + 1:])
    elif key in _POWERSHELL:
        for i, arg in enumerate(args):
            if arg.lower() in ("-command", "-c", "/command", "/c"):
                return " ".join(args[i + 1:])
    return None


def _collect(segments: List[ParsedCommand], depth: int = 0) -> Tuple[List[ParsedCommand], List[str], bool]:
    """Segments plus those of nested shell scripts; also returns the scripts and a too-deep flag."""
    found = list(segments)
    scripts: List[str] = []
    too_deep = False
    for seg in segments:
        for stage in seg.stages():
            script = _nested_script(stage)
            if not script:
                continue
            if depth >= _MAX_NESTING:
                too_deep = True
                continue
            scripts.append(script)
            inner, inner_scripts, inner_deep = _collect(parse_command(script), depth + 1)
            found.extend(inner)
            scripts.extend(inner_scripts)
            too_deep = too_deep or inner_deep
    return found, scripts, too_deep


def _normalized(stage: ParsedCommand) -> str:
    words = [stage.binary, *stage.args, *(f"> {t}" for t in stage.redirect_targets)]
    return " ".join(w for w in words if w)


def _pipeline_text(segment: ParsedCommand) -> str:
    return " | ".join(_normalized(s) for s in segment.stages())


def _path_args(stage: ParsedCommand) -> List[str]:
    paths = list(stage.redirect_targets)
    for arg in stage.args:
        value = arg.split("=", 1)[1] if "=" in arg else ""
        for cand in (arg, value):
            if cand and _PATHLIKE_RE.match(cand) and not _SWITCH_RE.match(cand):
                paths.append(cand)
    paths.extend(_WIN_PATH_RE.findall(stage.raw_command))
    return paths


def _invoked_binaries(stage: ParsedCommand) -> List[str]:
    names = [stage.binary]
    if binary_key(stage.binary) in _WRAPPERS:
        names.extend(a for a in stage.args if not a.startswith("-"))
    return [n for n in names if n]


def _binary_allowed(binary: str, level: int, overrides: Overrides) -> bool:
    # Allowlists only ever match bare names; `/tmp/ls` is not `ls`.
    bare = is_bare_name(binary)
    key = binary_key(binary)
    if bare and key in {binary_key(a) for a in overrides.shell_allow}:
        return True
    if level >= 4:
        return True
    return bare and key in BINARY_ALLOWLIST_DEFAULT


def _evaluate_command(raw: str, level: int, overrides: Overrides, roots: _Roots) -> PermissionDecision:
    gate = _level_gate(level, "shell commands")
    if gate is not None:
        return gate
    if has_command_substitution(raw):
        return _deny(_SUBSTITUTION_REASON, "critical")

    top = parse_command(raw)
    if not top:
        return _deny("Empty command", "low")

    segments, scripts, too_deep = _collect(top)
    stages = [stage for seg in segments for stage in seg.stages()]
    texts = [raw, *scripts]
    for seg in segments:
        texts.append(_pipeline_text(seg))
        for stage in seg.stages():
            texts.extend((stage.raw_command, _normalized(stage)))

    paths = [(p, _path_forms(p, roots)) for stage in stages for p in _path_args(stage)]
    paths = [(p, forms) for p, forms in paths if forms]
    pattern = most_severe_pattern(texts)
    if pattern is not None:
        logger.info("Dangerous pattern matched: %s (%s)", pattern.description, pattern.severity)

    denies: List[PermissionDecision] = []
    approvals: List[PermissionDecision] = []

    if too_deep:
        denies.append(_deny(f"Nested shell invocations deeper than {_MAX_NESTING} levels cannot be checked", "high"))
    if any(has_command_substitution(t) for t in texts):
        denies.append(_deny(_SUBSTITUTION_REASON, "critical"))
    if pattern is not None and pattern.severity == "always_block":
        denies.append(_deny(f"Blocked: {pattern.description}", "critical"))
    denies.extend(
        _deny(f"Path '{p}' is in an always-blocked directory", "critical")
        for p, forms in paths
        if _path_always_blocked(forms)
    )
    blocked = {binary_key(b) for b in overrides.shell_block}
    denies.extend(
        _deny(f"Command '{name}' is in the user blocklist", "high")
        for stage in stages
        for name in _invoked_binaries(stage)
        if binary_key(name) in blocked
    )
    denies.extend(
        _deny(f"Path '{p}' is in the user blocklist", "high")
        for p, forms in paths
        if _under_any(forms, overrides.dir_block, roots)
    )

    unlisted = [s.binary for s in stages if s.binary and not _binary_allowed(s.binary, level, overrides)]
    outside = [p for p, forms in paths if not _path_allowed(forms, overrides, roots)]
    if level == 2:
        denies.extend(_by_level(2, f"Command '{b}' is not in allowlist") for b in unlisted)
        denies.extend(_by_level(2, f"Path '{p}' is not in allowed directories") for p in outside)
    if denies:
        return denies[0]

    if pattern is not None:
        approvals.append(_needs_approval(f"Requires approval: {pattern.description}", "high"))
    if any(has_variable_expansion(t) for t in texts):
        approvals.append(_needs_approval("Variable expansion requires approval: its value cannot be checked in advance"))
    if any(s.env_assignments for s in stages):
        approvals.append(_needs_approval("Inline environment assignment requires approval"))
    if any(s.has_sudo for s in stages):
        approvals.append(_needs_approval("Command uses sudo (elevated privileges)", "high"))
    if level == 3:
        approvals.extend(_by_level(3, f"Command '{b}' is not in allowlist") for b in unlisted)
        approvals.extend(_by_level(3, f"Path '{p}' is not in allowed directories") for p in outside)
    if level <= 2 and any(s.has_redirects for s in stages):
        approvals.append(_needs_approval("Command uses file redirects"))
    if approvals:
        return approvals[0]

    return _allow("Command passed all security checks")


# --- Engine ---
class PermissionsEngine:
    """
    Gatekeeper for shell commands, file paths and outbound domains.

    Each decision is reported to the audit sink. A failing sink is logged
    and never changes the decision. Relative and `~` paths that climb with
    `..` resolve against `cwd` and `home`; when those are not given the climb
    is assumed to reach `/`.
    """

    def __init__(
        self, audit: Optional[AuditSink] = None, *, cwd: Optional[str] = None, home: Optional[str] = None
    ) -> None:
        self.audit: AuditSink = audit if audit is not None else LoggingAuditLog()
        self.roots = _Roots(cwd=cwd, home=home)

    def check_command(
        self, raw: str, level: int, overrides: Optional[Overrides] = None, *, task_id: Optional[str] = None
    ) -> PermissionDecision:
        decision = _evaluate_command(raw, level, overrides or Overrides(), self.roots)
        self._record("shell_command", raw, level, decision, task_id)
        return decision

    def check_file_path(
        self, path: str, level: int, overrides: Optional[Overrides] = None, *, task_id: Optional[str] = None
    ) -> PermissionDecision:
        decision = _level_gate(level, "file accesses") or _classify_path(
            path, level, overrides or Overrides(), self.roots
        )
        self._record("file_access", path, level, decision, task_id)
        return decision

    def check_domain(
        self, domain: str, level: int, overrides: Optional[Overrides] = None, *, task_id: Optional[str] = None
    ) -> PermissionDecision:
        decision = _level_gate(level, "outbound network requests") or self._classify_domain(
            domain, level, overrides or Overrides()
        )
        self._record("network_request", domain, level, decision, task_id)
        return decision

    @staticmethod
    def _classify_domain(domain: str, level: int, overrides: Overrides) -> PermissionDecision:
        host = _normalize_host(domain)
        if host is None:
            return _deny(f"Invalid domain '{domain}'", "low")
        if _host_always_blocked(host):
            return _deny(f"Domain '{domain}' is always-blocked (local or private network)", "critical")
        if _host_matches(host, overrides.domain_block):
            return _deny(f"Domain '{host}' is in the user blocklist", "high")
        if _any_match(DOMAIN_RULES.default_allowed, [host]) or _host_matches(host, overrides.domain_allow):
            return _allow(f"Domain '{host}' is in allowlist")
        return _by_level(level, f"Domain '{host}' is not in allowlist")

    def _record(
        self, action_type: str, detail: str, level: int, decision: PermissionDecision, task_id: Optional[str]
    ) -> None:
        safe_append(
            self.audit,
            AuditEntry(
                action_type=action_type,
                detail=detail,
                allowed=decision.allowed,
                security_level=level if isinstance(level, int) else 0,
                reason=decision.reason,
                task_id=task_id,
            ),
        )


_default_engine = PermissionsEngine()


def check_command(
    raw: str, level: int, overrides: Optional[Overrides] = None, *, task_id: Optional[str] = None
) -> PermissionDecision:
    return _default_engine.check_command(raw, level, overrides, task_id=task_id)


def check_file_path(
    path: str, level: int, overrides: Optional[Overrides] = None, *, task_id: Optional[str] = None
) -> PermissionDecision:
    return _default_engine.check_file_path(path, level, overrides, task_id=task_id)


def check_domain(
    domain: str, level: int, overrides: Optional[Overrides] = None, *, task_id: Optional[str] = None
) -> PermissionDecision:
    return _default_engine.check_domain(domain, level, overrides, task_id=task_id)
