from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from itertools import islice
from typing import List, Optional, Pattern, Sequence, Tuple

from .models import ContentSource, SanitizationResult, Threat, ThreatSeverity

logger = logging.getLogger(__name__)

DEFAULT_TOOL_NAMES: Tuple[str, ...] = (
    "execute_shell",
    "write_file",
    "read_file",
    "http_request",
    "schedule_task",
    "list_directory",
    "knowledge_store",
)

MIN_BASE64_LENGTH = 24
_MAX_BASE64_CANDIDATES = 20


# --- Threat patterns ---
@dataclass(frozen=True)
class _ThreatPattern:
    name: str
    pattern: Pattern[str]
    severity: ThreatSeverity
    description: str
    external_only: bool


def _tp(name: str, regex: str, severity: ThreatSeverity, description: str, external_only: bool) -> _ThreatPattern:
    return _ThreatPattern(name, re.compile(regex, re.IGNORECASE), severity, description, external_only)


_THREAT_PATTERNS: Tuple[_ThreatPattern, ...] = (
    # -- Instruction override --
    _tp("instruction_override",
        r"\bignore\s+(?:all\s+)?(?:of\s+)?(?:the\s+|your\s+)?(?:previous|prior|above|earlier|preceding)\s+"
        r"(?:instructions|prompts|rules|directions)",
        "high", "Attempts to override system instructions", False),
    _tp("instruction_override", r"\bignore\s+all\s+(?:instructions|prompts|rules)",
        "high", "Attempts to override system instructions", False),
    _tp("instruction_override",
        r"\bdisregard\s+(?:all\s+)?(?:previous|prior|above|your)\s+(?:instructions|prompts|rules|guidelines)",
        "high", "Attempts to disregard system instructions", False),
    _tp("instruction_override", r"\bforget\s+(?:all\s+)?(?:previous|prior|above|your)\s+(?:instructions|prompts|rules)",
        "high", "Attempts to make the agent forget its instructions", False),
    # -- Role impersonation --
    _tp("role_impersonation", r"\byou\s+are\s+(?:now|actually)\s+",
        "high", "External content tries to change the agent's role", True),
    _tp("role_impersonation", r"\byou\s+must\s+(?:now\s+)?obey\b",
        "high", "External content demands obedience", True),
    _tp("role_impersonation", r"\bact\s+as\s+(?:an?\s+)?\w+",
        "medium", "External content tries to assign a new role", True),
    _tp("role_impersonation", r"\bpretend\s+(?:to\s+be|you\s+are)\b",
        "medium", "External content tries to assign a new role", True),
    # -- Delimiter and chat-template injection --
    _tp("delimiter_injection",
        r"</?(?:system|user|assistant)>|\[/?INST\]|<<SYS>>|<</SYS>>|<\|im_(?:start|end)\|>"
        r"|<\|(?:system|user|assistant|endoftext)\|>",
        "high", "Attempts to inject role delimiters", False),
    _tp("delimiter_injection", r"```(?:system|assistant)\b",
        "medium", "Attempts to inject a role via code fences", False),
    # -- System prompt extraction --
    _tp("prompt_extraction",
        r"\b(?:show|reveal|output|print|display|repeat|leak)\s+(?:me\s+)?(?:your\s+)?(?:system\s+)?"
        r"(?:prompt|instructions|rules)\b",
        "medium", "Attempts to extract the system prompt", True),
)

_BASE64_RE = re.compile(r"[A-Za-z0-9+/]{%d,}={0,2}" % MIN_BASE64_LENGTH)
_SUSPICIOUS_DECODED_RE = re.compile(
    r"\b(?:ignore|disregard|execute|run|delete|send|override|bypass|admin|root|sudo|instructions)\b",
    re.IGNORECASE,
)


# --- Scanning ---
@lru_cache(maxsize=32)
def _tool_pattern(tool_names: Tuple[str, ...]) -> Optional[Pattern[str]]:
    names = [re.escape(n) for n in tool_names if n]
    if not names:
        return None
    return re.compile(r"\b(?:%s)\b" % "|".join(names), re.IGNORECASE)


def _decode_base64(span: str) -> Optional[str]:
    body = span.rstrip("=")
    if len(body) % 4 == 1:
        return None
    try:
        text = base64.b64decode(body + "=" * (-len(body) % 4), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    printable = sum(1 for ch in text if ch.isprintable() or ch.isspace())
    # random binary that happens to be valid UTF-8 is not an instruction
    if not text or printable / len(text) < 0.9:
        return None
    return text


def _scan(text: str, source: ContentSource, tool_names: Tuple[str, ...], depth: int) -> List[Threat]:
    threats: List[Threat] = []
    for tp in _THREAT_PATTERNS:
        if tp.external_only and source != "external":
            continue
        if tp.pattern.search(text):
            threats.append(Threat(type=tp.name, description=tp.description, severity=tp.severity))

    if source != "external":
        return threats

    tool_re = _tool_pattern(tool_names)
    if tool_re is not None and tool_re.search(text):
        threats.append(
            Threat(type="tool_name_mention", description="External content mentions agent tool names", severity="medium")
        )

    if depth > 0:
        return threats
    for m in islice(_BASE64_RE.finditer(text), _MAX_BASE64_CANDIDATES):
        decoded = _decode_base64(m.group(0))
        if decoded is None or not _SUSPICIOUS_DECODED_RE.search(decoded):
            continue
        inner = _scan(decoded, source, tool_names, depth + 1)
        severity: ThreatSeverity = "high" if any(t.severity == "high" for t in inner) else "medium"
        threats.append(
            Threat(
                type="encoded_instruction",
                description="Base64-encoded suspicious instruction detected",
                severity=severity,
            )
        )
        break
    return threats


def check_for_injection(
    text: str, source: ContentSource, tool_names: Sequence[str] = DEFAULT_TOOL_NAMES
) -> SanitizationResult:
    """
    Scan `text` for prompt-injection signatures.

    Instruction overrides and delimiter tokens are flagged for any source.
    Role framing, tool-name mentions, prompt extraction and base64 payloads
    are only meaningful in external content, so user text is not checked
    for them. The result is clean unless a high-severity threat was found.
    """
    threats = _scan(text, source, tuple(tool_names), 0)
    is_clean = not any(t.severity == "high" for t in threats)
    if not is_clean:
        logger.warning(
            "Prompt injection detected in %s content: %s",
            source,
            ", ".join(sorted({t.type for t in threats})),
        )
    elif threats:
        logger.info("Low-confidence injection signals in %s content: %d", source, len(threats))
    return SanitizationResult(is_clean=is_clean, threats=threats, sanitized_input=text)
