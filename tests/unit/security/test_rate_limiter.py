"""Unit tests for the per-identity token bucket."""

import pytest

from fixtures.fakes import RecordingTelemetry
from kaliguard.security.permissions import RateLimitSpec
from kaliguard.security.rate_limiter import RateLimiterService


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def test_allows_up_to_capacity(clock: FakeClock) -> None:
    limiter = RateLimiterService(tokens=3, interval=60.0, clock=clock)
    results = [limiter.check_limit("alice").allowed for _ in range(4)]
    assert results == [True, True, True, False]


def test_identities_are_independent(clock: FakeClock) -> None:
    limiter = RateLimiterService(tokens=1, interval=60.0, clock=clock)
    assert limiter.check_limit("alice").allowed
    assert not limiter.check_limit("alice").allowed
    assert limiter.check_limit("bob").allowed


def test_continuous_refill(clock: FakeClock) -> None:
    limiter = RateLimiterService(tokens=10, interval=60.0, clock=clock)
    for _ in range(10):
        limiter.check_limit("alice")
    assert not limiter.check_limit("alice").allowed

    # 10 tokens per 60s: seven seconds refills just over one token
    clock.now += 7.0
    assert limiter.check_limit("alice").allowed
    assert not limiter.check_limit("alice").allowed


def test_refill_capped_at_capacity(clock: FakeClock) -> None:
    limiter = RateLimiterService(tokens=2, interval=1.0, clock=clock)
    limiter.check_limit("alice")
    clock.now += 100.0
    decision = limiter.check_limit("alice")
    assert decision.allowed
    assert decision.remaining == pytest.approx(1.0)


def test_rule_spec_uses_separate_bucket(clock: FakeClock) -> None:
    limiter = RateLimiterService(tokens=10, interval=60.0, clock=clock)
    spec = RateLimitSpec(tokens=1, interval=60.0)

    assert limiter.check_limit("alice", spec=spec, key="ping").allowed
    assert not limiter.check_limit("alice", spec=spec, key="ping").allowed
    assert limiter.check_limit("alice").allowed
    assert limiter.bucket_count == 2


def test_rejection_reported_to_telemetry(clock: FakeClock) -> None:
    telemetry = RecordingTelemetry()
    limiter = RateLimiterService(tokens=1, interval=60.0, telemetry=telemetry, clock=clock)
    limiter.check_limit("alice")
    limiter.check_limit("alice")
    assert telemetry.events == [
        ("rate_limit_exceeded", {"identity": "alice", "limit": 1, "interval": 60.0})
    ]


def test_idle_buckets_cleaned(clock: FakeClock) -> None:
    limiter = RateLimiterService(tokens=5, interval=60.0, idle_ttl=100.0, clock=clock)
    limiter.check_limit("alice")
    clock.now += 50.0
    limiter.check_limit("bob")
    clock.now += 60.0

    assert limiter.cleanup() == 1
    assert limiter.bucket_count == 1


def test_opportunistic_cleanup(clock: FakeClock) -> None:
    limiter = RateLimiterService(tokens=5, interval=60.0, idle_ttl=10.0, clock=clock)
    limiter.check_limit("alice")
    clock.now += 20.0
    limiter.check_limit("bob")
    assert limiter.bucket_count == 1


@pytest.mark.parametrize(("tokens", "interval"), [(0, 60.0), (5, 0.0)])
def test_invalid_configuration(tokens: int, interval: float) -> None:
    with pytest.raises(ValueError):
        RateLimiterService(tokens=tokens, interval=interval)


def test_refund_returns_token_up_to_capacity(clock: FakeClock) -> None:
    limiter = RateLimiterService(tokens=1, interval=60.0, clock=clock)
    assert limiter.check_limit("alice").allowed
    limiter.refund("alice")
    limiter.refund("alice")
    assert limiter.check_limit("alice").allowed
    assert not limiter.check_limit("alice").allowed


def test_refund_unknown_identity_is_noop(clock: FakeClock) -> None:
    limiter = RateLimiterService(clock=clock)
    limiter.refund("ghost")
    assert limiter.bucket_count == 0
