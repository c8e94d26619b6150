from __future__ import annotations

from agent_guard.utils import binary_key, is_bare_name, pattern_severity_rank


def test_pattern_severity_rank_orders_always_block_first() -> None:
    assert pattern_severity_rank("needs_approval") < pattern_severity_rank("always_block")


def test_binary_key() -> None:
    assert binary_key("/usr/bin/curl") == "curl"
    assert binary_key("C:\\Windows\\System32\\CMD.EXE") == "cmd"
    assert binary_key("Remove-Item") == "remove-item"
    assert binary_key("script.bat") == "script"


def test_is_bare_name() -> None:
    assert is_bare_name("ls") is True
    assert is_bare_name("./ls") is False
    assert is_bare_name("C:\\tools\\ls.exe") is False
    assert is_bare_name("") is False
