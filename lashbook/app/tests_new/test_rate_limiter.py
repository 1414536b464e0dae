import pytest

from lashbook.app.services.rate_limiter import (
    DEFAULT_TIERS,
    TIER_BOOKING,
    TIER_PUBLIC,
    RateLimitConfig,
    RateLimiter,
    build_default_limiter,
    extract_client_ip,
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def test_default_tiers():
    assert DEFAULT_TIERS[TIER_PUBLIC] == RateLimitConfig(60, 60)
    assert DEFAULT_TIERS["auth"] == RateLimitConfig(30, 60)
    assert DEFAULT_TIERS[TIER_BOOKING] == RateLimitConfig(5, 300)
    assert DEFAULT_TIERS["admin"] == RateLimitConfig(120, 60)
    assert set(build_default_limiter().tiers) == set(DEFAULT_TIERS)


def test_admits_up_to_limit_then_reports_retry_after(clock):
    limiter = build_default_limiter(clock=clock)
    for _ in range(5):
        assert limiter.check(TIER_BOOKING, "10.0.0.1") is None
        clock.advance(10)

    # oldest hit at t=1000, now t=1050: it leaves the window in 250s
    assert limiter.check(TIER_BOOKING, "10.0.0.1") == 250
    # other addresses have their own budget
    assert limiter.check(TIER_BOOKING, "10.0.0.2") is None


def test_rejected_requests_do_not_extend_the_window(clock):
    limiter = RateLimiter(clock=clock)
    limiter.add_tier("t", RateLimitConfig(max_requests=1, window_seconds=10))
    assert limiter.check("t", "ip") is None
    for _ in range(3):
        clock.advance(2)
        assert limiter.check("t", "ip") is not None
    clock.advance(4.5)
    assert limiter.check("t", "ip") is None


def test_retry_after_is_at_least_one_second(clock):
    limiter = RateLimiter(clock=clock)
    limiter.add_tier("t", RateLimitConfig(max_requests=1, window_seconds=1))
    limiter.check("t", "ip")
    clock.advance(0.999)
    assert limiter.check("t", "ip") == 1


def test_window_slides(clock):
    limiter = RateLimiter(clock=clock)
    limiter.add_tier("t", RateLimitConfig(max_requests=2, window_seconds=60))
    assert limiter.check("t", "ip") is None
    clock.advance(30)
    assert limiter.check("t", "ip") is None
    assert limiter.check("t", "ip") == 30
    clock.advance(31)
    # first hit expired, second one still counts
    assert limiter.check("t", "ip") is None
    assert limiter.check("t", "ip") is not None


def test_tiers_are_independent(clock):
    limiter = build_default_limiter(clock=clock)
    for _ in range(5):
        limiter.check(TIER_BOOKING, "ip")
    assert limiter.check(TIER_BOOKING, "ip") is not None
    assert limiter.check(TIER_PUBLIC, "ip") is None


def test_unknown_tier_raises(clock):
    limiter = build_default_limiter(clock=clock)
    with pytest.raises(KeyError):
        limiter.check("nope", "ip")


def test_cleanup_drops_stale_keys(clock):
    limiter = build_default_limiter(clock=clock)
    limiter.check(TIER_PUBLIC, "old")
    clock.advance(100)
    limiter.check(TIER_PUBLIC, "fresh")
    assert limiter.tracked_keys(TIER_PUBLIC) == 2

    clock.advance(25)
    # "old" is 125s old, past twice the 60s window
    assert limiter.cleanup() == 1
    assert limiter.tracked_keys(TIER_PUBLIC) == 1
    assert limiter.cleanup() == 0


@pytest.mark.parametrize(
    "forwarded, peer, expected",
    [
        ("203.0.113.7, 10.0.0.1", "10.0.0.1", "203.0.113.7"),
        (" 2001:db8::1 ", None, "2001:db8::1"),
        ("garbage", "192.168.1.5", "192.168.1.5"),
        (None, "192.168.1.5", "192.168.1.5"),
        (None, "testclient", "127.0.0.1"),
        ("", None, "127.0.0.1"),
    ],
)
def test_extract_client_ip(forwarded, peer, expected):
    assert extract_client_ip(forwarded, peer) == expected
