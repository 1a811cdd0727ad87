"""Tests for aido.recursion: self-invocation detection and depth markers.

Detection is a heuristic over the command head; the limitation tests below
document what it deliberately does not see.
"""

import pytest

from aido.recursion import (
    DEPTH_ENV_VAR,
    decorate,
    depth_limit_command,
    is_self_call,
    read_depth,
    split_assignments,
)


class TestReadDepth:
    @pytest.mark.parametrize(
        "environ, expected",
        [
            ({}, 0),
            ({DEPTH_ENV_VAR: ""}, 0),
            ({DEPTH_ENV_VAR: "abc"}, 0),
            ({DEPTH_ENV_VAR: "1.5"}, 0),
            ({DEPTH_ENV_VAR: "2"}, 2),
            ({DEPTH_ENV_VAR: " 3 "}, 3),
            ({DEPTH_ENV_VAR: "-1"}, 0),
        ],
    )
    def test_parsing(self, environ, expected):
        assert read_depth(environ) == expected


class TestSplitAssignments:
    def test_no_assignments(self):
        assert split_assignments("ls -la") == ([], "ls -la")

    def test_leading_whitespace_stripped(self):
        assert split_assignments("   aido x") == ([], "aido x")

    def test_multiple_assignments(self):
        assigned, rest = split_assignments("FOO=1 BAR='a b' aido --print-config")
        assert assigned == ["FOO=1", "BAR='a b'"]
        assert rest == "aido --print-config"

    def test_empty_value(self):
        assert split_assignments("FOO= aido") == (["FOO="], "aido")

    def test_assignment_alone_is_not_stripped(self):
        assert split_assignments("FOO=1") == ([], "FOO=1")


class TestIsSelfCall:
    @pytest.mark.parametrize(
        "command",
        [
            "aido",
            "aido --print-config",
            "  aido 'hello'",
            "/usr/local/bin/aido",
            "/usr/local/bin/aido do something",
            "FOO=bar aido question",
            f"{DEPTH_ENV_VAR}=1 aido question",
        ],
    )
    def test_detected(self, command):
        assert is_self_call(command)

    @pytest.mark.parametrize(
        "command",
        [
            "ls",
            "aidonot",
            "echo aido",
            "./aido",
            "/opt/aido/bin/tool",
        ],
    )
    def test_not_detected(self, command):
        assert not is_self_call(command)

    def test_extra_install_path(self):
        assert is_self_call("/home/u/.local/bin/aido x", ("aido", "/home/u/.local/bin/aido"))

    @pytest.mark.parametrize(
        "command",
        [
            "sh -c 'aido hi'",
            "cd /tmp && aido hi",
            "env aido hi",
        ],
    )
    def test_indirect_invocations_are_not_seen(self, command):
        # Known limitation of the head-only heuristic.
        assert not is_self_call(command)


class TestDecorate:
    def test_non_self_command_unchanged(self):
        assert decorate("ls -la", 0, 1) == "ls -la"
        assert decorate("ls -la", 5, 1) == "ls -la"

    def test_scenario_below_limit(self):
        assert decorate("aido --print-config", 0, 1) == f"{DEPTH_ENV_VAR}=1 aido --print-config"

    def test_scenario_at_limit(self):
        result = decorate("aido --print-config", 1, 1)
        assert result == depth_limit_command(1, 1)
        assert "--print-config" not in result
        assert "recursion depth limit reached (depth=1, max_depth=1)" in result

    def test_existing_marker_replaced(self):
        result = decorate(f"{DEPTH_ENV_VAR}=0 FOO=x aido run", 1, 3)
        assert result == f"{DEPTH_ENV_VAR}=2 FOO=x aido run"

    def test_forged_marker_cannot_skip_limit(self):
        result = decorate(f"{DEPTH_ENV_VAR}=0 aido run", 2, 2)
        assert result == depth_limit_command(2, 2)

    @pytest.mark.parametrize("depth", [0, 1, 2, 5])
    @pytest.mark.parametrize("max_depth", [0, 1, 3, 6])
    def test_marker_is_exactly_depth_plus_one(self, depth, max_depth):
        command = "aido 'summarize README.md' --tool-loops 2"
        result = decorate(command, depth, max_depth)
        if depth >= max_depth:
            assert result == depth_limit_command(depth, max_depth)
        else:
            assert result == f"{DEPTH_ENV_VAR}={depth + 1} {command}"

    def test_limit_command_is_an_echo(self):
        assert depth_limit_command(2, 1).startswith("echo ")
