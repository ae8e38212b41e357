"""Admission control and audit trail."""

from kaliguard.security.audit import AuditLogger
from kaliguard.security.permissions import (
    ExactPattern,
    PermissionDecision,
    PermissionManager,
    PermissionRule,
    RateLimitSpec,
    RegexPattern,
)
from kaliguard.security.rate_limiter import RateLimitDecision, RateLimiterService

__all__ = [
    "AuditLogger",
    "ExactPattern",
    "PermissionDecision",
    "PermissionManager",
    "PermissionRule",
    "RateLimitDecision",
    "RateLimitSpec",
    "RateLimiterService",
    "RegexPattern",
]
