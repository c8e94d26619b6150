from __future__ import annotations

import re

from .models import PatternSeverity


# --- Utilities ---
def pattern_severity_rank(sev: PatternSeverity) -> int:
    return {"needs_approval": 1, "always_block": 2}[sev]


def binary_key(binary: str) -> str:
    # Basename, lowercased, without a Windows executable suffix.
    name = binary.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1].lower()
    return re.sub(r"\.(?:exe|com|cmd|bat)$", "", name)


def is_bare_name(binary: str) -> bool:
    return bool(binary) and "/" not in binary and "\\" not in binary
