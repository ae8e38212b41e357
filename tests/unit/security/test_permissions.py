"""Unit tests for PermissionManager rule evaluation and in-flight tracking."""

import threading

import pytest

from kaliguard.core.config import PermissionRuleConfig, PermissionsConfig
from kaliguard.core.models import ToolDefinition
from kaliguard.security.permissions import (
    DENY_ALL,
    REASON_CONCURRENCY,
    REASON_POLICY,
    REASON_ROLES,
    ExactPattern,
    PermissionManager,
    PermissionRule,
    RegexPattern,
    default_rules,
    normalize_command,
    rules_from_config,
)
from kaliguard.tools.catalog import DEFAULT_TOOLS


class TestPatterns:
    def test_exact(self) -> None:
        assert ExactPattern("nmap").matches("nmap")
        assert not ExactPattern("nmap").matches("nmap2")

    def test_regex_search(self) -> None:
        pattern = RegexPattern.compile(r"^(dig|host)$")
        assert pattern.matches("dig")
        assert not pattern.matches("hostname")

    def test_normalize_command(self) -> None:
        assert normalize_command("  ping -c 1 example.com ") == "ping"
        assert normalize_command("") == ""


class TestRuleEvaluation:
    def test_deny_all_sentinel_is_first(self) -> None:
        manager = PermissionManager()
        assert manager.rules == [DENY_ALL]
        decision = manager.check("nmap", identity="alice")
        assert decision.allowed is False
        assert decision.reason == REASON_POLICY

    def test_last_matching_rule_wins(self) -> None:
        manager = PermissionManager(
            [
                PermissionRule(ExactPattern("nmap")),
                PermissionRule(RegexPattern.compile("^nm"), allowed=False),
            ]
        )
        assert manager.check("nmap -sV host", "alice").reason == REASON_POLICY

        manager.add_rule(PermissionRule(ExactPattern("nmap")))
        assert manager.check("nmap -sV host", "alice").allowed is True

    def test_decision_carries_rule(self) -> None:
        rule = PermissionRule(ExactPattern("ping"), max_concurrent=2)
        decision = PermissionManager([rule]).check("ping", "alice")
        assert decision.rule == rule

    def test_roles(self) -> None:
        manager = PermissionManager([PermissionRule(ExactPattern("john"), roles=("admin",))])
        assert manager.check("john", "bob").reason == REASON_ROLES
        assert manager.check("john", "bob", roles=["user"]).reason == REASON_ROLES
        assert manager.check("john", "bob", roles=["user", "admin"]).allowed is True


class TestRuleListMutation:
    def test_insert_never_ahead_of_sentinel(self) -> None:
        manager = PermissionManager()
        rule = PermissionRule(ExactPattern("ls"))
        manager.add_rule(rule, index=0)
        assert manager.rules == [DENY_ALL, rule]

    def test_sentinel_cannot_be_removed(self) -> None:
        manager = PermissionManager([PermissionRule(ExactPattern("ls"))])
        with pytest.raises(ValueError):
            manager.remove_rule(0)
        with pytest.raises(ValueError):
            manager.remove_rule(-2)

    def test_remove_rule(self) -> None:
        rule = PermissionRule(ExactPattern("ls"))
        manager = PermissionManager([rule])
        assert manager.remove_rule(1) == rule
        assert manager.check("ls", "alice").allowed is False


class TestConcurrency:
    def test_limit_counts_all_in_flight_for_identity(self) -> None:
        manager = PermissionManager([PermissionRule(RegexPattern.compile(".*"), max_concurrent=2)])
        manager.track_start("alice", "ping")
        manager.track_start("alice", "dig")

        assert manager.check("ls", "alice").reason == REASON_CONCURRENCY
        assert manager.check("ls", "bob").allowed is True

        manager.track_end("alice", "dig")
        assert manager.check("ls", "alice").allowed is True

    def test_track_context_releases_on_error(self) -> None:
        manager = PermissionManager()
        with pytest.raises(RuntimeError):
            with manager.track("alice", "nmap -p 80 host"):
                assert manager.active_count("alice") == 1
                raise RuntimeError("boom")
        assert manager.active_count("alice") == 0

    def test_track_end_never_goes_negative(self) -> None:
        manager = PermissionManager()
        manager.track_end("alice", "nmap")
        assert manager.active_count("alice") == 0

    def test_thread_safe_tracking(self) -> None:
        manager = PermissionManager()

        def worker() -> None:
            for _ in range(500):
                manager.track_start("alice", "ping")
                manager.track_end("alice", "ping")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert manager.active_count("alice") == 0


class TestDefaultRules:
    @pytest.fixture
    def manager(self) -> PermissionManager:
        return PermissionManager(default_rules(DEFAULT_TOOLS))

    def test_catalog_tools_allowed(self, manager: PermissionManager) -> None:
        for command in ("nmap", "subfinder", "nuclei", "sqlmap", "nikto"):
            assert manager.check(command, "alice").allowed, command

    def test_admin_tools(self, manager: PermissionManager) -> None:
        assert manager.check("msfconsole", "alice").reason == REASON_ROLES
        assert manager.check("john", "alice", roles=["admin"]).allowed is True

    def test_network_diagnostics_rate_limited(self, manager: PermissionManager) -> None:
        decision = manager.check("ping", "alice", roles=["user"])
        assert decision.allowed is True
        assert decision.rule.rate_limit is not None
        assert decision.rule.max_concurrent == 2

    def test_unlisted_command_denied(self, manager: PermissionManager) -> None:
        assert manager.check("bash", "alice", roles=["admin"]).allowed is False


def test_rules_from_config() -> None:
    config = PermissionsConfig(
        use_default_rules=False,
        rules=[
            PermissionRuleConfig(pattern="ping", max_concurrent=1, rate_limit={"tokens": 3, "interval": 10}),
            PermissionRuleConfig(pattern="^nm", regex=True, allowed=False),
        ],
    )
    rules = rules_from_config(config)
    assert len(rules) == 2
    assert isinstance(rules[0].pattern, ExactPattern)
    assert rules[0].rate_limit.tokens == 3
    assert isinstance(rules[1].pattern, RegexPattern)
    assert PermissionManager.from_config(config).check("nmap", "alice").reason == REASON_POLICY


def test_default_rules_follow_given_catalog(probe_tool: ToolDefinition) -> None:
    manager = PermissionManager.from_config(PermissionsConfig(), [probe_tool])
    assert manager.check("probe", "alice").allowed is True
    assert manager.check("nmap", "alice").allowed is False
