from __future__ import annotations

from agent_guard.command_parser import has_command_substitution, has_variable_expansion, parse_command


def test_parse_empty_input_yields_no_segments() -> None:
    assert parse_command("") == []
    assert parse_command("   \t ") == []


def test_parse_splits_chain_segments_in_order() -> None:
    cmds = parse_command("ls -la; echo hi && git status || pwd")
    assert [c.binary for c in cmds] == ["ls", "echo", "git", "pwd"]
    assert cmds[0].args == ["-la"]
    assert cmds[2].raw_command == "git status"


def test_parse_operators_inside_quotes_do_not_split() -> None:
    cmds = parse_command("echo \"a; b && c\" 'd || e | f'")
    assert len(cmds) == 1
    assert cmds[0].args == ["a; b && c", "d || e | f"]
    assert cmds[0].pipes == []


def test_parse_newline_and_background_split_segments() -> None:
    cmds = parse_command("sleep 1 & ls\nwhoami")
    assert [c.binary for c in cmds] == ["sleep", "ls", "whoami"]


def test_parse_substitution_body_does_not_split() -> None:
    cmds = parse_command("echo $(a; b) done")
    assert len(cmds) == 1
    assert cmds[0].binary == "echo"


def test_parse_pipes_are_flat() -> None:
    cmds = parse_command("cat a.txt | grep x | wc -l")
    assert len(cmds) == 1
    primary = cmds[0]
    assert primary.binary == "cat"
    assert [p.binary for p in primary.pipes] == ["grep", "wc"]
    assert all(p.pipes == [] for p in primary.pipes)
    assert [s.binary for s in primary.stages()] == ["cat", "grep", "wc"]


def test_parse_quote_interleaving_resolves_binary() -> None:
    assert parse_command("r'm' -rf /")[0].binary == "rm"
    assert parse_command('"r"m -rf /')[0].binary == "rm"
    assert parse_command("\\rm -rf /")[0].binary == "rm"


def test_parse_escapes_and_nested_quotes() -> None:
    assert parse_command("cat my\\ file.txt")[0].args == ["my file.txt"]
    assert parse_command('echo "it\'s"')[0].args == ["it's"]
    assert parse_command("echo 'say \"hi\"'")[0].args == ['say "hi"']
    assert parse_command('echo "a \\"b\\" \\$HOME"')[0].args == ['a "b" $HOME']


def test_parse_collapses_whitespace() -> None:
    cmd = parse_command("   ls \t   -la    ")[0]
    assert cmd.binary == "ls"
    assert cmd.args == ["-la"]


def test_parse_redirect_targets_are_kept() -> None:
    cmd = parse_command("echo hi > out.txt 2>&1")[0]
    assert cmd.has_redirects is True
    assert cmd.args == ["hi"]
    assert cmd.redirect_targets == ["out.txt"]


def test_parse_redirect_in_pipe_stage_propagates() -> None:
    cmd = parse_command("cat a | sort >> sorted.txt")[0]
    assert cmd.has_redirects is True
    assert cmd.pipes[0].redirect_targets == ["sorted.txt"]


def test_parse_heredoc_delimiter_is_not_a_target() -> None:
    cmd = parse_command("cat <<EOF")[0]
    assert cmd.has_redirects is True
    assert cmd.redirect_targets == []


def test_parse_strips_leading_sudo() -> None:
    cmd = parse_command("sudo -u root apt-get install jq")[0]
    assert cmd.has_sudo is True
    assert cmd.binary == "apt-get"
    assert cmd.args == ["install", "jq"]


def test_parse_sudo_in_pipe_stage_propagates() -> None:
    cmd = parse_command("echo 127.0.0.1 box | sudo tee -a /etc/hosts")[0]
    assert cmd.has_sudo is True
    assert cmd.pipes[0].binary == "tee"


def test_parse_env_assignments_and_grouping() -> None:
    cmd = parse_command("FOO=1 BAR=two ls")[0]
    assert cmd.env_assignments == ["FOO=1", "BAR=two"]
    assert cmd.binary == "ls"
    assert parse_command("{ ls; }")[0].binary == "ls"


def test_has_command_substitution() -> None:
    assert has_command_substitution("echo $(whoami)") is True
    assert has_command_substitution("echo `whoami`") is True
    assert has_command_substitution("diff <(ls a) <(ls b)") is True
    assert has_command_substitution("echo $100") is False
    assert has_command_substitution("echo $1 costs $") is False


def test_has_variable_expansion() -> None:
    assert has_variable_expansion("echo $HOME") is True
    assert has_variable_expansion("echo ${PATH}") is True
    assert has_variable_expansion("echo $_") is True
    assert has_variable_expansion("echo $1") is False
    assert has_variable_expansion("echo $?") is False
    assert has_variable_expansion("echo $") is False


def test_parse_ansi_c_quoting_is_decoded() -> None:
    cmds = parse_command("$'\\x72\\x6d' -rf ~")
    assert cmds[0].binary == "rm"
    assert cmds[0].args == ["-rf", "~"]
    assert parse_command("$'\\162\\155' x")[0].binary == "rm"
    assert parse_command("$'\\u0072m' x")[0].binary == "rm"
    assert parse_command("echo $'a\\nb' $'it\\'s'")[0].args == ["a\nb", "it's"]


def test_parse_ansi_c_quoting_keeps_operators_literal() -> None:
    cmds = parse_command("echo $'a; b' | cat")
    assert len(cmds) == 1
    assert cmds[0].args == ["a; b"]
    assert [p.binary for p in cmds[0].pipes] == ["cat"]


def test_parse_ansi_c_nul_ends_the_string() -> None:
    assert parse_command("echo $'ab\\x00cd'")[0].args == ["ab"]


def test_parse_locale_string_reads_like_double_quotes() -> None:
    assert parse_command('echo $"hi there"')[0].args == ["hi there"]


def test_parse_brace_lists_expand_into_words() -> None:
    cmds = parse_command("{rm,-rf,/}")
    assert cmds[0].binary == "rm"
    assert cmds[0].args == ["-rf", "/"]
    assert parse_command("echo a{b,c}d")[0].args == ["abd", "acd"]
    assert parse_command("echo {x,{y,z}}")[0].args == ["x", "y", "z"]
    assert parse_command("echo {,a}")[0].args == ["a"]


def test_parse_brace_ranges_expand() -> None:
    assert parse_command("echo {1..3}")[0].args == ["1", "2", "3"]
    assert parse_command("echo {5..1..2}")[0].args == ["5", "3", "1"]
    assert parse_command("echo {a..c}")[0].args == ["a", "b", "c"]


def test_parse_braces_that_are_not_expansions_stay_literal() -> None:
    assert parse_command("echo '{a,b}' \"{c,d}\" \\{e,f}")[0].args == ["{a,b}", "{c,d}", "{e,f}"]
    assert parse_command("echo ${HOME} {} {a}")[0].args == ["${HOME}", "{}", "{a}"]
    assert parse_command("find . -name x -exec rm {} +")[0].args[-2:] == ["{}", "+"]


def test_parse_brace_expansion_is_capped() -> None:
    assert len(parse_command("echo {1..100000}")[0].args) == 1024
