"""Permission Manager - Rule-based admission control with concurrency tracking.

Rules are evaluated against the first whitespace token of the command.
A default deny-all rule is always first in the list and the LAST matching
rule wins, so the decision is deterministic and total: every request gets
exactly one decision.

In-flight executions are tracked per identity under a lock. The pipeline
uses track() so the slot is released on every exit path.

Usage:
    from kaliguard.security.permissions import PermissionManager, PermissionRule

    manager = PermissionManager([PermissionRule(ExactPattern("ping"), max_concurrent=1)])
    decision = manager.check("ping -c 1 host", identity="alice")
    if decision.allowed:
        with manager.track("alice", "ping"):
            ...
"""

from __future__ import annotations

import re
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Sequence, Union

import structlog

from kaliguard.core.config import PermissionsConfig
from kaliguard.core.models import ToolDefinition

log = structlog.get_logger(__name__)

REASON_NO_MATCH = "no matching rule"
REASON_POLICY = "command not allowed by policy"
REASON_ROLES = "insufficient permissions"
REASON_CONCURRENCY = "maximum concurrent command limit reached"


@dataclass(frozen=True)
class ExactPattern:
    """Matches one command name exactly."""

    value: str

    def matches(self, command: str) -> bool:
        return command == self.value

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RegexPattern:
    """Matches command names with a regular expression (re.search semantics)."""

    regex: re.Pattern[str]

    @classmethod
    def compile(cls, expression: str) -> RegexPattern:
        return cls(re.compile(expression))

    def matches(self, command: str) -> bool:
        return self.regex.search(command) is not None

    def __str__(self) -> str:
        return f"/{self.regex.pattern}/"


Pattern = Union[ExactPattern, RegexPattern]


@dataclass(frozen=True)
class RateLimitSpec:
    """Token bucket attached to a rule: tokens per interval seconds."""

    tokens: int
    interval: float


@dataclass(frozen=True)
class PermissionRule:
    """One entry of the ordered rule list.

    Attributes:
        pattern: Exact or regex match on the normalized command name.
        allowed: Whether a match admits the command.
        roles: If non-empty, the caller must hold at least one.
        max_concurrent: Upper bound on the identity's in-flight executions.
        rate_limit: Rule-specific bucket, checked in addition to the
            identity-wide one.
    """

    pattern: Pattern
    allowed: bool = True
    roles: tuple[str, ...] = ()
    max_concurrent: Optional[int] = None
    rate_limit: Optional[RateLimitSpec] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", tuple(self.roles))


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of a permission check."""

    allowed: bool
    reason: Optional[str] = None
    rule: Optional[PermissionRule] = field(default=None, compare=False)


DENY_ALL = PermissionRule(RegexPattern.compile(".*"), allowed=False)


def normalize_command(command: str) -> str:
    """Return the first whitespace-delimited token of command."""
    parts = command.strip().split()
    return parts[0] if parts else ""


def default_rules(tools: Iterable[ToolDefinition]) -> list[PermissionRule]:
    """Rules installed when configuration does not opt out.

    Every tool in tools is allowed with two concurrent runs per identity;
    the exploitation framework and the password cracker require "admin".
    """
    admin_only = {"msfconsole", "john"}
    rules = [
        PermissionRule(
            RegexPattern.compile(
                r"^(ls|pwd|whoami|id|date|echo|cat|grep|find|file|stat|du|df|free"
                r"|uptime|w|who|last|history)$"
            ),
            roles=("user",),
            max_concurrent=5,
        ),
        PermissionRule(
            RegexPattern.compile(r"^(ping|traceroute|dig|nslookup|host)$"),
            roles=("user",),
            max_concurrent=2,
            rate_limit=RateLimitSpec(tokens=10, interval=60.0),
        ),
        PermissionRule(
            RegexPattern.compile(r"^(apt|apt-get|dpkg|snap)$"),
            roles=("admin",),
            max_concurrent=1,
        ),
    ]
    for tool in tools:
        rules.append(
            PermissionRule(
                ExactPattern(tool.command),
                roles=("admin",) if tool.command in admin_only else (),
                max_concurrent=2,
            )
        )
    return rules


def rules_from_config(
    config: PermissionsConfig, tools: Iterable[ToolDefinition] = ()
) -> list[PermissionRule]:
    """Build the rule list (without the deny-all sentinel) from settings.

    tools is the catalog the default rules are generated for.
    """
    rules = default_rules(tools) if config.use_default_rules else []
    for entry in config.rules:
        pattern: Pattern
        if entry.regex:
            pattern = RegexPattern.compile(entry.pattern)
        else:
            pattern = ExactPattern(entry.pattern)
        rate_limit = None
        if entry.rate_limit is not None:
            rate_limit = RateLimitSpec(entry.rate_limit.tokens, entry.rate_limit.interval)
        rules.append(
            PermissionRule(
                pattern,
                allowed=entry.allowed,
                roles=tuple(entry.roles),
                max_concurrent=entry.max_concurrent,
                rate_limit=rate_limit,
            )
        )
    return rules


class PermissionManager:
    """Ordered permission rules plus per-identity in-flight tracking."""

    def __init__(self, rules: Optional[Iterable[PermissionRule]] = None) -> None:
        self._rules: list[PermissionRule] = [DENY_ALL, *(rules or ())]
        self._active: dict[str, Counter[str]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls, config: PermissionsConfig, tools: Iterable[ToolDefinition] = ()
    ) -> PermissionManager:
        return cls(rules_from_config(config, tools))

    @property
    def rules(self) -> list[PermissionRule]:
        """Snapshot of the rule list, sentinel included."""
        with self._lock:
            return list(self._rules)

    def add_rule(self, rule: PermissionRule, index: Optional[int] = None) -> None:
        """Append a rule, or insert it at index (never ahead of the sentinel)."""
        with self._lock:
            if index is None:
                self._rules.append(rule)
            else:
                self._rules.insert(max(index, 1), rule)

    def remove_rule(self, index: int) -> PermissionRule:
        """Remove and return the rule at index.

        Raises:
            ValueError: If index addresses the deny-all sentinel.
            IndexError: If index is out of range.
        """
        with self._lock:
            if index == 0 or index == -len(self._rules):
                raise ValueError("The default deny rule cannot be removed")
            return self._rules.pop(index)

    def check(
        self,
        command: str,
        identity: str,
        roles: Sequence[str] = (),
    ) -> PermissionDecision:
        """Decide whether identity may run command now."""
        name = normalize_command(command)
        with self._lock:
            rule = None
            for candidate in self._rules:
                if candidate.pattern.matches(name):
                    rule = candidate
            in_flight = sum(self._active.get(identity, Counter()).values())

        if rule is None:
            decision = PermissionDecision(False, REASON_NO_MATCH)
        elif not rule.allowed:
            decision = PermissionDecision(False, REASON_POLICY, rule)
        elif rule.roles and not set(roles) & set(rule.roles):
            decision = PermissionDecision(False, REASON_ROLES, rule)
        elif rule.max_concurrent is not None and in_flight >= rule.max_concurrent:
            decision = PermissionDecision(False, REASON_CONCURRENCY, rule)
        else:
            decision = PermissionDecision(True, None, rule)

        log.debug(
            "permission_check",
            command=name,
            identity=identity,
            allowed=decision.allowed,
            reason=decision.reason,
            rule=str(rule.pattern) if rule else None,
        )
        return decision

    def track_start(self, identity: str, command: str) -> None:
        name = normalize_command(command)
        with self._lock:
            self._active.setdefault(identity, Counter())[name] += 1

    def track_end(self, identity: str, command: str) -> None:
        name = normalize_command(command)
        with self._lock:
            counts = self._active.get(identity)
            if not counts or counts[name] <= 0:
                return
            counts[name] -= 1
            if counts[name] <= 0:
                del counts[name]
            if not counts:
                del self._active[identity]

    @contextmanager
    def track(self, identity: str, command: str) -> Iterator[None]:
        """Hold an in-flight slot for the duration of the block."""
        self.track_start(identity, command)
        try:
            yield
        finally:
            self.track_end(identity, command)

    def active_count(self, identity: str) -> int:
        """Number of in-flight executions for identity."""
        with self._lock:
            return sum(self._active.get(identity, Counter()).values())
