from __future__ import annotations

import re
from typing import List, Optional, Tuple

from .models import ParsedCommand
from .utils import binary_key

_SUBSTITUTION_RE = re.compile(r"\$\(|`|[<>]\(")
_VARIABLE_RE = re.compile(r"\$\{|\$[A-Za-z_][A-Za-z0-9_]*")

_REDIRECT_OP_RE = re.compile(r"&>>|&>|>>|>\||>&|<<<|<<-|<<|<>|<&|>|<")
_FD_RE = re.compile(r"\d+")
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\+?=")

_ANSI_C_ESCAPES = {
    "a": "\a", "b": "\b", "e": "\x1b", "E": "\x1b", "f": "\f", "n": "\n", "r": "\r",
    "t": "\t", "v": "\v", "\\": "\\", "'": "'", '"': '"', "?": "?",
}
_HEX = "0123456789abcdefABCDEF"
_OCTAL = "01234567"
_BRACE_RANGE_RE = re.compile(r"(-?\d+)\.\.(-?\d+)(?:\.\.(-?\d+))?|([A-Za-z])\.\.([A-Za-z])(?:\.\.(-?\d+))?")
_MAX_BRACE_WORDS = 1024

_GROUPING_WORDS = {"{", "}", "!"}
_SUDO_OPTS_WITH_VALUE = {
    "-u", "-g", "-C", "-D", "-h", "-p", "-r", "-t", "-U", "-T",
    "--user", "--group", "--close-from", "--chdir", "--host",
    "--prompt", "--role", "--type", "--other-user", "--command-timeout",
}


def has_command_substitution(text: str) -> bool:
    """True for `$(...)`, backtick spans and `<(...)`/`>(...)`; false for `$100`."""
    return bool(_SUBSTITUTION_RE.search(text))


def has_variable_expansion(text: str) -> bool:
    """True for `$NAME`, `${...}` and `$_`; false for `$`, `$1` and `$?`."""
    return bool(_VARIABLE_RE.search(text))


# --- Word expansion ---
def _leading(s: str, i: int, allowed: str, limit: int) -> str:
    j = i
    while j < len(s) and j - i < limit and s[j] in allowed:
        j += 1
    return s[i:j]


def _decode_ansi_c(s: str, i: int) -> Tuple[str, int]:
    """
    Decode the body of a `$'...'` string starting at `i` (just past the
    opening quote) the way bash does. Returns the text and the index past
    the closing quote.
    """
    out: List[str] = []
    n = len(s)
    while i < n and s[i] != "'":
        c = s[i]
        if c != "\\" or i + 1 >= n:
            out.append(c)
            i += 1
            continue
        esc = s[i + 1]
        i += 2
        if esc in _ANSI_C_ESCAPES:
            out.append(_ANSI_C_ESCAPES[esc])
        elif esc in "xuU":
            digits = _leading(s, i, _HEX, {"x": 2, "u": 4, "U": 8}[esc])
            if not digits:
                out.append("\\" + esc)
                continue
            value = int(digits, 16)
            out.append(chr(value) if value <= 0x10FFFF else "\ufffd")
            i += len(digits)
        elif esc in _OCTAL:
            digits = esc + _leading(s, i, _OCTAL, 2)
            out.append(chr(int(digits, 8) & 0xFF))
            i += len(digits) - 1
        elif esc == "c" and i < n:
            out.append(chr(ord(s[i]) & 0x1F))
            i += 1
        else:
            out.append("\\" + esc)
    # bash ends the string at a NUL
    return "".join(out).split("\x00", 1)[0], min(i + 1, n)


def _brace_span(chars: List[Tuple[str, bool]]) -> Optional[Tuple[int, int, List[int]]]:
    """First unquoted `{a,b}` or `{x..y}` in a word: open index, close index, top-level commas."""
    for start, (ch, quoted) in enumerate(chars):
        if ch != "{" or quoted or (start and chars[start - 1] == ("$", False)):
            continue
        depth = 0
        commas: List[int] = []
        for j in range(start, len(chars)):
            cj, qj = chars[j]
            if qj:
                continue
            if cj == "{":
                depth += 1
            elif cj == "}":
                depth -= 1
                if depth == 0:
                    inner = chars[start + 1:j]
                    is_range = not any(q for _, q in inner) and _BRACE_RANGE_RE.fullmatch(
                        "".join(c for c, _ in inner)
                    )
                    if commas or is_range:
                        return start, j, commas
                    break
            elif cj == "," and depth == 1:
                commas.append(j)
    return None


def _range_items(text: str) -> List[str]:
    m = _BRACE_RANGE_RE.fullmatch(text)
    if m is None:
        return [text]
    if m.group(1) is not None:
        first, last, step = int(m.group(1)), int(m.group(2)), abs(int(m.group(3) or 1)) or 1
        fmt = str
    else:
        first, last, step = ord(m.group(4)), ord(m.group(5)), abs(int(m.group(6) or 1)) or 1
        fmt = chr
    values = range(first, last + 1, step) if first <= last else range(first, last - 1, -step)
    return [fmt(v) for v in values[:_MAX_BRACE_WORDS]]


def _expand_braces(chars: List[Tuple[str, bool]]) -> List[str]:
    """Brace-expand one word given as (char, quoted) pairs; quoted braces stay literal."""
    span = _brace_span(chars)
    if span is None:
        return ["".join(c for c, _ in chars)]
    start, end, commas = span
    prefix, suffix = chars[:start], chars[end + 1:]
    if commas:
        bounds = [start, *commas, end]
        parts = [chars[a + 1:b] for a, b in zip(bounds, bounds[1:])]
    else:
        text = "".join(c for c, _ in chars[start + 1:end])
        parts = [[(c, True) for c in item] for item in _range_items(text)]

    words: List[str] = []
    for part in parts:
        words.extend(_expand_braces(prefix + part + suffix))
        if len(words) >= _MAX_BRACE_WORDS:
            return words[:_MAX_BRACE_WORDS]
    return words


# --- Splitting on chain and pipe operators ---
class _Splitter:
    def __init__(self, raw: str) -> None:
        self.raw = raw
        self.segments: List[Tuple[str, List[str]]] = []
        self._segment: List[str] = []
        self._stage: List[str] = []
        self._stages: List[str] = []

    def _push(self, text: str) -> None:
        self._segment.append(text)
        self._stage.append(text)

    def _end_stage(self) -> None:
        stage = "".join(self._stage).strip()
        if stage:
            self._stages.append(stage)
        self._stage = []

    def _end_segment(self) -> None:
        self._end_stage()
        if self._stages:
            self.segments.append(("".join(self._segment).strip(), self._stages))
        self._segment = []
        self._stages = []

    def split(self) -> List[Tuple[str, List[str]]]:
        raw = self.raw
        n = len(raw)
        i = 0
        in_single = in_double = in_backtick = in_ansi = False
        depth = 0  # nesting of $( ... ), <( ... ), >( ... )

        while i < n:
            c = raw[i]
            nxt = raw[i + 1] if i + 1 < n else ""

            if in_ansi:
                if c == "\\" and nxt:
                    self._push(c + nxt)
                    i += 2
                    continue
                self._push(c)
                if c == "'":
                    in_ansi = False
                i += 1
                continue
            if in_single:
                self._push(c)
                if c == "'":
                    in_single = False
                i += 1
                continue
            if c == "$" and nxt == "'" and not in_double:
                in_ansi = True
                self._push(c + nxt)
                i += 2
                continue
            if c == "\\" and nxt:
                self._push(c + nxt)
                i += 2
                continue
            if c == "'" and not in_double:
                in_single = True
                self._push(c)
                i += 1
                continue
            if c == '"':
                in_double = not in_double
                self._push(c)
                i += 1
                continue
            if c == "`":
                in_backtick = not in_backtick
                self._push(c)
                i += 1
                continue
            if nxt == "(" and (c == "$" or (c in "<>" and not in_double)):
                depth += 1
                self._push(c + nxt)
                i += 2
                continue
            if depth and c == "(":
                depth += 1
            elif depth and c == ")":
                depth -= 1

            if in_double or in_backtick or depth:
                self._push(c)
                i += 1
                continue

            if c in "&|" and nxt == c:
                self._end_segment()
                i += 2
            elif c in ";\n":
                self._end_segment()
                i += 1
            elif c == "|":
                self._end_stage()
                self._segment.append(c)
                i += 2 if nxt == "&" else 1
            elif c == "&":
                prev = raw[i - 1] if i else ""
                if prev in ("<", ">") or nxt == ">":
                    self._push(c)
                else:
                    # Background operator: what follows is a separate command.
                    self._end_segment()
                i += 1
            else:
                self._push(c)
                i += 1

        self._end_segment()
        return self.segments


# --- Tokenizing a single stage ---
class _Tokenizer:
    def __init__(self, stage: str) -> None:
        self.stage = stage
        self.words: List[str] = []
        self.targets: List[str] = []
        self.has_redirects = False
        self._buf: List[str] = []
        # parallel to _buf: True where the character came from quoting or an escape
        self._mask: List[bool] = []
        self._started = False
        self._quoted = False
        self._pending: Optional[str] = None

    def _add(self, text: str, quoted: bool) -> None:
        self._buf.extend(text)
        self._mask.extend([quoted] * len(text))
        self._started = True

    def _reset(self) -> None:
        self._buf = []
        self._mask = []
        self._started = False
        self._quoted = False

    def _finish(self) -> None:
        if not self._started:
            return
        word = "".join(self._buf)
        expanded = _expand_braces(list(zip(self._buf, self._mask)))
        if expanded != [word]:
            # unquoted brace expansion drops empty results, as bash does
            expanded = [w for w in expanded if w]
        if self._pending is None:
            self.words.extend(expanded)
        else:
            # heredoc delimiters and fd duplications like 2>&1 name no file
            dup = self._pending.endswith("&") and (_FD_RE.fullmatch(word) or word == "-")
            if self._pending not in ("<<", "<<-") and not dup:
                self.targets.extend(expanded)
            self._pending = None
        self._reset()

    def _start_redirect(self, i: int) -> int:
        word = "".join(self._buf)
        if self._started and not self._quoted and _FD_RE.fullmatch(word):
            # `2>` : the digits are a file descriptor, not a word
            self._reset()
        else:
            self._finish()
        m = _REDIRECT_OP_RE.match(self.stage, i)
        op = m.group(0) if m else self.stage[i]
        self._pending = op
        self.has_redirects = True
        return i + len(op)

    def run(self) -> "_Tokenizer":
        s = self.stage
        n = len(s)
        i = 0
        in_single = in_double = False

        while i < n:
            c = s[i]
            nxt = s[i + 1] if i + 1 < n else ""

            if in_single:
                if c == "'":
                    in_single = False
                else:
                    self._add(c, True)
                i += 1
                continue
            if in_double:
                if c == "\\" and nxt and nxt in '$`"\\\n':
                    if nxt != "\n":
                        self._add(nxt, True)
                    i += 2
                    continue
                if c == '"':
                    in_double = False
                else:
                    self._add(c, True)
                i += 1
                continue

            if c == "\\":
                if nxt == "\n":
                    i += 2
                    continue
                self._add(nxt or c, True)
                i += 2 if nxt else 1
                continue
            if c == "$" and nxt == "'":
                text, i = _decode_ansi_c(s, i + 2)
                self._add(text, True)
                self._quoted = True
                continue
            if c == "$" and nxt == '"':
                # $"..." is a locale-translated string; it reads like "..."
                i += 1
                continue
            if c in "'\"":
                in_single = c == "'"
                in_double = c == '"'
                self._started = True
                self._quoted = True
                i += 1
                continue
            if c in " \t\r\n()":
                self._finish()
                i += 1
                continue
            if c in "<>" or (c == "&" and nxt == ">"):
                i = self._start_redirect(i)
                continue

            self._add(c, False)
            i += 1

        self._finish()
        return self


def _parse_stage(stage: str) -> ParsedCommand:
    tok = _Tokenizer(stage).run()
    words = tok.words
    env: List[str] = []
    has_sudo = False
    idx = 0

    while idx < len(words):
        word = words[idx]
        if word in _GROUPING_WORDS:
            idx += 1
        elif _ASSIGNMENT_RE.match(word):
            env.append(word)
            idx += 1
        elif binary_key(word) == "sudo":
            has_sudo = True
            idx += 1
            while idx < len(words) and words[idx].startswith("-"):
                opt = words[idx]
                idx += 1
                if opt == "--":
                    break
                if opt in _SUDO_OPTS_WITH_VALUE:
                    idx += 1
        else:
            break

    return ParsedCommand(
        binary=words[idx] if idx < len(words) else "",
        args=words[idx + 1:],
        raw_command=stage,
        has_redirects=tok.has_redirects,
        has_sudo=has_sudo,
        redirect_targets=tok.targets,
        env_assignments=env,
    )


def parse_command(raw: str) -> List[ParsedCommand]:
    """
    Parse a raw command line into one ParsedCommand per chain segment.

    Words come out the way bash would hand them to the program: quotes and
    escapes are resolved (`r'm'`, `\\rm` and `$'\\x72\\x6d'` are all `rm`)
    and unquoted brace lists and ranges are expanded (`{rm,-rf,/}` is three
    words). Redirect operands are kept as `redirect_targets`.

    Segments are split on top-level `;`, `&&`, `||`, newlines and background
    `&`; each segment's `|` stages land in `pipes` of its first command.
    Redirect and sudo flags of any stage are OR'd onto the primary.
    Empty or blank input yields an empty list, which callers must deny.
    """
    if not raw or not raw.strip():
        return []

    commands: List[ParsedCommand] = []
    for segment, stages in _Splitter(raw).split():
        primary, *pipes = [_parse_stage(s) for s in stages]
        commands.append(
            primary.model_copy(
                update={
                    "raw_command": segment,
                    "pipes": pipes,
                    "has_redirects": primary.has_redirects or any(p.has_redirects for p in pipes),
                    "has_sudo": primary.has_sudo or any(p.has_sudo for p in pipes),
                }
            )
        )
    return commands
