from __future__ import annotations

import ipaddress
import re
import sys
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Pattern, Tuple, Union

from .errors import RuleTableError
from .models import PatternSeverity
from .utils import pattern_severity_rank

_SEVERITIES = ("always_block", "needs_approval")


@dataclass(frozen=True)
class DangerousPattern:
    pattern: Pattern[str]
    description: str
    severity: PatternSeverity

    def __post_init__(self) -> None:
        if self.severity not in _SEVERITIES:
            raise RuleTableError(f"Invalid severity {self.severity!r} for rule: {self.description}")

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text))


@dataclass(frozen=True)
class AccessRules:
    always_blocked: Tuple[Pattern[str], ...]
    default_allowed: Tuple[Pattern[str], ...]


def _rule(regex: str, description: str, severity: PatternSeverity) -> DangerousPattern:
    return DangerousPattern(re.compile(regex, re.IGNORECASE), description, severity)


def _compile_all(regexes: Iterable[str]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(r, re.IGNORECASE) for r in regexes)


# --- Shared fragments ---
_RECURSIVE_FLAG = r"(?=.*\s(?:-[a-z]*r[a-z]*|--recursive)(?:\s|$))"
_POSIX_ROOT_OR_HOME = r"(?=.*\s(?:/\*?|~/?\*?|\$\{?HOME\}?/?\*?|/home/?\*?|/Users/?\*?)(?:\s|$))"
_POSIX_ROOT = r"(?=.*\s/\*?(?:\s|$))"
_WIN_SYSTEM_PATH = (
    r"(?:[a-z]:[\\/]?(?:\*(?:\.\*)?)?(?=[\s\"']|$)"
    r"|[a-z]:[\\/](?:windows|program files(?: \(x86\))?|programdata|recovery"
    r"|system volume information)(?=[\\/\s\"']|$)"
    r"|[a-z]:[\\/]users[\\/]?(?=[\s\"']|$)"
    r"|\$env:(?:systemroot|windir|systemdrive|programfiles|programdata|userprofile)"
    r"|%(?:systemroot|windir|systemdrive|programfiles|programdata|userprofile)%)"
)
_SHELLS = r"(?:\S*/)?(?:sh|bash|zsh|dash|ksh|fish|python[0-9.]*|perl|ruby|node|php|iex|invoke-expression|powershell|pwsh)\b"

# Order is informational only; resolution always picks the most severe match.
DANGEROUS_PATTERNS: Tuple[DangerousPattern, ...] = (
    # -- Destructive deletes --
    _rule(rf"\brm\b{_RECURSIVE_FLAG}{_POSIX_ROOT_OR_HOME}",
          "Recursive delete of the root or home directory", "always_block"),
    _rule(r"--no-preserve-root\b", "Delete with --no-preserve-root", "always_block"),
    _rule(rf"\b(?:rd|rmdir|del|erase)\b(?=.*\s/s\b)(?=.*\s[\"']?{_WIN_SYSTEM_PATH})",
          "Recursive delete of a Windows drive root or system directory", "always_block"),
    _rule(rf"\b(?:remove-item|ri|rm|rmdir|rd|del|erase)\b(?=.*\s-r[a-z]*\b)(?=.*\s[\"']?{_WIN_SYSTEM_PATH})",
          "Recursive Remove-Item on a Windows system path", "always_block"),
    _rule(rf"\brm\b{_RECURSIVE_FLAG}", "Recursive delete (rm -r)", "needs_approval"),
    _rule(r"\b(?:rd|rmdir|del|erase)\b(?=.*\s/s\b)", "Recursive delete (rd /s or del /s)", "needs_approval"),
    _rule(r"\bremove-item\b(?=.*\s-r[a-z]*\b)", "Recursive Remove-Item", "needs_approval"),
    _rule(r"\bfind\b.*\s-(?:delete|exec|execdir|ok|okdir)\b", "find with -delete or -exec", "needs_approval"),
    # -- Filesystems and partitions --
    _rule(r"\bmkfs(?:\.[a-z0-9]+)?\b", "Format filesystem (mkfs)", "always_block"),
    _rule(r"\b(?:fdisk|sfdisk|cfdisk|gdisk|sgdisk|parted|wipefs|mke2fs|mkswap)\b",
          "Disk partitioning or signature wipe", "always_block"),
    _rule(r"\bformat(?:\.com)?\s+[a-z]:", "Format a Windows volume", "always_block"),
    _rule(r"\bdiskpart\b", "Windows disk partitioning (diskpart)", "always_block"),
    _rule(r"\b(?:format-volume|clear-disk|initialize-disk)\b", "PowerShell disk formatting", "always_block"),
    # -- Raw block devices --
    _rule(r"\bdd\b.*\bof=/dev/(?!null\b|zero\b|stdout\b|stderr\b|tty\b)",
          "Direct disk write (dd of=/dev/...)", "always_block"),
    _rule(r"\bshred\b.*\s/dev/", "Shred a device", "always_block"),
    _rule(r">\s*[\"']?/dev/(?:sd[a-z]|hd[a-z]|vd[a-z]|xvd[a-z]|nvme\d|mmcblk\d|disk\d|rdisk\d)",
          "Redirect output to raw disk device", "always_block"),
    _rule(r"\\\\\.\\physicaldrive\d+", "Raw access to a physical drive", "always_block"),
    # -- Power state --
    _rule(r"\b(?:shutdown|reboot|halt|poweroff)\b", "System shutdown or reboot command", "always_block"),
    _rule(r"\binit\s+[06]\b", "System shutdown via init (init 0 or init 6)", "always_block"),
    _rule(r"\b(?:stop-computer|restart-computer)\b", "PowerShell shutdown or restart", "always_block"),
    # -- Permissions on the root filesystem --
    _rule(rf"\bchmod\b{_RECURSIVE_FLAG}(?=.*\s(?:0?777|a\+rwx|ugo\+rwx|a\+w|o\+w)(?:\s|$)){_POSIX_ROOT}",
          "Recursive world-writable chmod on the root filesystem", "always_block"),
    _rule(rf"\bchown\b{_RECURSIVE_FLAG}{_POSIX_ROOT}",
          "Recursive ownership change on the root filesystem", "always_block"),
    # -- Process exhaustion --
    _rule(r":\(\)\s*\{.*\|.*&\s*\}\s*;?\s*:", "Fork bomb pattern", "always_block"),
    _rule(r"\b(\w+)\s*\(\)\s*\{[^}]*\b\1\s*\|\s*\1\b[^}]*&", "Fork bomb pattern (named function)", "always_block"),
    _rule(r"%0\s*\|\s*%0", "Batch file fork bomb", "always_block"),
    _rule(r"\bkill\s+(?:-\w+\s+)*-1(?:\s|$)", "Kill every process (kill -1)", "always_block"),
    # -- Remote code execution --
    _rule(rf"\b(?:curl|wget|fetch|iwr|irm|invoke-webrequest|invoke-restmethod)\b.*\|\s*(?:sudo\s+)?{_SHELLS}",
          "Remote code execution: download piped into a shell or interpreter", "always_block"),
    _rule(r"\binvoke-expression\b|\|\s*iex\b|\biex\s*[(\$'\"]", "PowerShell Invoke-Expression", "always_block"),
    _rule(r"\b(?:powershell|pwsh)\b.*\s-(?:e|ec|en|enc|enco\w*)\b", "PowerShell encoded command", "always_block"),
    # -- Privilege escalation --
    _rule(r"\bsudo\b", "Elevated privilege command (sudo)", "needs_approval"),
    _rule(r"(?:^|[;&|(]\s*)su(?:\s|$)", "Switch user command (su)", "needs_approval"),
    _rule(r"\b(?:doas|pkexec)\b", "Elevated privilege command (doas or pkexec)", "needs_approval"),
    _rule(r"\brunas\b", "Elevated privilege command (runas)", "needs_approval"),
    # -- Package managers --
    _rule(r"\b(?:apt|apt-get|aptitude|yum|dnf|zypper|brew|port|snap|flatpak|npm|pnpm|yarn|pip|pip3|pipx"
          r"|gem|cargo|go|composer|winget|choco|scoop)\s+(?:-\S+\s+)*"
          r"(?:install|uninstall|reinstall|remove|purge|erase|add|i)\b",
          "Package manager install or uninstall operation", "needs_approval"),
    _rule(r"\bpacman\s+-(?:S|R|U)", "Package manager install or uninstall operation (pacman)", "needs_approval"),
    _rule(r"\bapk\s+(?:add|del)\b", "Package manager install or uninstall operation (apk)", "needs_approval"),
    _rule(r"\bmsiexec\b|\b(?:install|uninstall)-(?:package|module)\b",
          "Windows package install or uninstall operation", "needs_approval"),
    # -- Windows system tooling --
    _rule(r"\bbcdedit\b", "Boot configuration change (bcdedit)", "always_block"),
    _rule(r"\breg(?:\.exe)?\s+delete\s+(?:hklm|hkey_local_machine)\b",
          "Delete machine-wide registry keys", "always_block"),
    _rule(rf"\b(?:icacls|cacls|takeown)\b.*\s[\"']?{_WIN_SYSTEM_PATH}",
          "Change ownership or ACLs of Windows system directories", "always_block"),
    _rule(r"\bset-executionpolicy\b", "Change PowerShell execution policy", "always_block"),
    _rule(r"\bvssadmin\b.*\bdelete\s+shadows\b|\bwbadmin\s+delete\b",
          "Delete volume shadow copies or backups", "always_block"),
    # -- Scheduled jobs --
    _rule(r"\bcrontab\s+-r\b", "Remove all cron jobs (crontab -r)", "needs_approval"),
)


def match_dangerous_patterns(texts: Iterable[str]) -> List[DangerousPattern]:
    candidates = [t for t in texts if t]
    return [p for p in DANGEROUS_PATTERNS if any(p.matches(t) for t in candidates)]


def most_severe_pattern(texts: Iterable[str]) -> Optional[DangerousPattern]:
    """Most severe match across all texts; table order only breaks ties."""
    best: Optional[DangerousPattern] = None
    for p in match_dangerous_patterns(texts):
        if best is None or pattern_severity_rank(p.severity) > pattern_severity_rank(best.severity):
            best = p
    return best


# --- Binaries ---
_COMMON_BINARIES = {"echo", "git", "curl", "hostname", "whoami", "more", "sort", "tree"}

_POSIX_BINARIES = {
    "ls", "cat", "head", "tail", "grep", "egrep", "fgrep", "rg", "find", "wc", "printf",
    "date", "pwd", "which", "mkdir", "cp", "mv", "touch", "stat", "file", "jq", "sed",
    "awk", "uniq", "tr", "cut", "tee", "basename", "dirname", "realpath", "readlink",
    "diff", "less", "du", "df", "uname", "id", "ps", "column", "nl", "paste", "comm",
    "od", "xxd", "md5sum", "sha256sum", "shasum", "seq", "true", "false",
}

_WINDOWS_BINARIES = {
    "dir", "type", "where", "findstr", "fc", "get-childitem", "get-content",
    "select-string", "get-location", "get-date", "get-item", "test-path",
    "measure-object",
}

KNOWN_DESTRUCTIVE_BINARIES: FrozenSet[str] = frozenset({
    "rm", "rmdir", "rd", "del", "erase", "remove-item", "dd", "mkfs", "shred", "wipefs",
    "fdisk", "parted", "diskpart", "format", "format-volume", "shutdown", "reboot", "halt",
    "poweroff", "init", "su", "sudo", "doas", "pkexec", "runas", "chmod", "chown", "kill",
    "killall", "bcdedit", "reg", "icacls", "takeown", "vssadmin", "invoke-expression", "iex",
})


def binary_allowlist(platform: str = sys.platform) -> FrozenSet[str]:
    extra = _WINDOWS_BINARIES if platform.startswith("win") else _POSIX_BINARIES
    return frozenset(_COMMON_BINARIES | extra)


BINARY_ALLOWLIST_DEFAULT: FrozenSet[str] = binary_allowlist()


# --- Directories ---
DIRECTORY_RULES = AccessRules(
    always_blocked=_compile_all([
        r"^/$",
        r"^/(?:etc|usr|bin|sbin|System|Library|var|boot|root|proc|sys)(?:/|$)",
        r"^/private/(?:etc|var)(?:/|$)",
        r"^[a-z]:\\?$",
        r"^(?:[a-z]:)?\\(?:windows|program files|program files \(x86\)|programdata|recovery"
        r"|system volume information)(?:\\|$)",
        r"^\\\\[.?]\\",
        r"^(?:%(?:systemroot|windir|systemdrive|programfiles|programdata)%"
        r"|\$env:(?:systemroot|windir|systemdrive|programfiles|programdata))",
    ]),
    default_allowed=_compile_all([
        # workspace-relative paths that do not climb out of the working directory
        r"^(?![a-z]:)(?!\.\.(?:[/\\]|$))[^/\\~%$]",
        r"^~/\.agent-guard(?:/|$)",
        r"^~/(?:Documents|Desktop|Downloads)(?:/|$)",
        r"^[a-z]:\\users\\[^\\]+\\(?:documents|desktop|downloads)(?:\\|$)",
        r"^/dev/(?:null|zero|stdin|stdout|stderr|tty)$",
    ]),
)


# --- Outbound domains ---
DOMAIN_RULES = AccessRules(
    always_blocked=_compile_all([
        r"^localhost$",
        r"\.localhost$",
        r"^127\.\d{1,3}\.\d{1,3}\.\d{1,3}$",
        r"^0\.0\.0\.0$",
        r"^10\.\d{1,3}\.\d{1,3}\.\d{1,3}$",
        r"^172\.(?:1[6-9]|2\d|3[01])\.\d{1,3}\.\d{1,3}$",
        r"^192\.168\.\d{1,3}\.\d{1,3}$",
        r"^169\.254\.\d{1,3}\.\d{1,3}$",
        r"\.internal$",
        r"^::1$",
        r"^f[cd][0-9a-f]{0,2}:",
        r"^fe[89ab][0-9a-f]:",
    ]),
    default_allowed=_compile_all([
        r"^api\.anthropic\.com$",
        r"^api\.openai\.com$",
        r"^api\.github\.com$",
        r"^registry\.npmjs\.org$",
        r"^pypi\.org$",
        r"^files\.pythonhosted\.org$",
        r"^raw\.githubusercontent\.com$",
    ]),
)

BLOCKED_NETWORKS: Tuple[Union[ipaddress.IPv4Network, ipaddress.IPv6Network], ...] = tuple(
    ipaddress.ip_network(n)
    for n in (
        "127.0.0.0/8", "0.0.0.0/8", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16",
        "169.254.0.0/16", "::1/128", "::/128", "fc00::/7", "fe80::/10",
    )
)


def _validate_tables() -> None:
    overlap = BINARY_ALLOWLIST_DEFAULT & KNOWN_DESTRUCTIVE_BINARIES
    if overlap:
        raise RuleTableError(f"Default allowlist contains destructive binaries: {sorted(overlap)}")
    for p in DANGEROUS_PATTERNS:
        if not p.description:
            raise RuleTableError(f"Rule without description: {p.pattern.pattern}")


_validate_tables()
