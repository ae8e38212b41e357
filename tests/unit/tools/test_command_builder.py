"""Unit tests for CommandBuilder and shell escaping."""

import pytest

from kaliguard.core.models import ToolDefinition
from kaliguard.tools.catalog import DNSX, HTTPX, NMAP, SUBFINDER
from kaliguard.tools.command_builder import CommandBuilder, escape_shell_arg


class TestEscapeShellArg:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("", "''"),
            ("example.com", "example.com"),
            ("http://a.example.com/?id=1&x=2", "http://a.example.com/?id=1&x=2"),
            ("hello world", "'hello world'"),
            ("it's", "'it'\\''s'"),
            ("'already quoted'", "'already quoted'"),
            ('"double"', '"double"'),
        ],
    )
    def test_escape(self, value: str, expected: str) -> None:
        assert escape_shell_arg(value) == expected

    def test_single_quote_char_is_escaped(self) -> None:
        assert escape_shell_arg("'") == "''\\'''"


class TestBuild:
    @pytest.fixture
    def builder(self) -> CommandBuilder:
        return CommandBuilder()

    def test_nmap_is_positional(self, builder: CommandBuilder) -> None:
        command = builder.build(NMAP, {"target": "10.0.0.1", "scan_type": "-sV", "ports": "22,80"})
        assert command == "nmap -sV -p 22,80 10.0.0.1"

    def test_nmap_skips_empty_parts(self, builder: CommandBuilder) -> None:
        assert builder.build(NMAP, {"target": "10.0.0.1", "ports": ""}) == "nmap 10.0.0.1"

    def test_long_flags_in_param_order(self, builder: CommandBuilder) -> None:
        command = builder.build(SUBFINDER, {"output": "out.txt", "domain": "example.com"})
        assert command == "subfinder --domain example.com --output out.txt"

    def test_single_char_flag(self, builder: CommandBuilder) -> None:
        command = builder.build(DNSX, {"target": "example.com", "a": True, "cname": False})
        assert command == "dnsx --target example.com -a"

    def test_boolean_flags(self, builder: CommandBuilder) -> None:
        command = builder.build(
            HTTPX, {"target": "example.com", "title": True, "status-code": False, "tech-detect": True}
        )
        assert command == "httpx --target example.com --title --tech-detect"

    def test_values_escaped(self, builder: CommandBuilder, probe_tool: ToolDefinition) -> None:
        command = builder.build(probe_tool, {"target": "two words", "count": 3})
        assert command == "probe --target 'two words' --count 3"
