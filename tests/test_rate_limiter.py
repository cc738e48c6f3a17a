"""Tests for rate limiting."""

from concurrent.futures import ThreadPoolExecutor

from aigate.rate_limiter import RateLimitConfig, RateLimiter


class TestFixedWindow:
    """Test the per-identity request ceiling."""

    def test_fifty_per_hour(self, clock):
        """Test calls 1-50 pass, 51 fails, and a new window allows again."""
        limiter = RateLimiter(RateLimitConfig(max_requests=50, window_seconds=3600), clock=clock)

        for _ in range(50):
            assert limiter.check_rate_limit("user_1") is True
            clock.advance(1)
        assert limiter.check_rate_limit("user_1") is False

        clock.advance(3600)
        assert limiter.check_rate_limit("user_1") is True

    def test_identities_are_independent(self, clock):
        limiter = RateLimiter(RateLimitConfig(max_requests=1), clock=clock)

        assert limiter.check_rate_limit("a") is True
        assert limiter.check_rate_limit("a") is False
        assert limiter.check_rate_limit("b") is True

    def test_rejection_carries_retry_hint(self, clock):
        limiter = RateLimiter(RateLimitConfig(max_requests=1, window_seconds=60), clock=clock)
        limiter.check("a")
        clock.advance(20)

        decision = limiter.check("a")
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after_seconds == 40

    def test_rejection_does_not_count(self, clock):
        limiter = RateLimiter(RateLimitConfig(max_requests=2), clock=clock)
        for _ in range(5):
            limiter.check("a")

        assert limiter.get_usage("a")["requests"] == 2

    def test_remaining_counts_down(self, clock):
        limiter = RateLimiter(RateLimitConfig(max_requests=3), clock=clock)
        assert [limiter.check("a").remaining for _ in range(3)] == [2, 1, 0]


class TestTokens:
    """Test the optional token ceiling."""

    def test_token_ceiling(self, clock):
        limiter = RateLimiter(RateLimitConfig(max_requests=100, max_tokens=1000), clock=clock)

        assert limiter.check_rate_limit("a", tokens=600) is True
        assert limiter.check_rate_limit("a", tokens=600) is False
        assert limiter.check_rate_limit("a", tokens=400) is True

    def test_record_tokens(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.check("a")
        limiter.record_tokens("a", 250)
        limiter.record_tokens("nobody", 250)

        assert limiter.get_usage("a")["tokens"] == 250
        assert limiter.get_usage("nobody")["tokens"] == 0


class TestHousekeeping:
    """Test stats, cleanup and reset."""

    def test_unknown_identity_usage(self, clock):
        usage = RateLimiter(clock=clock).get_usage("ghost")
        assert usage["requests"] == 0
        assert usage["remaining"] == 50
        assert usage["reset_at"] is None

    def test_global_stats(self, clock):
        limiter = RateLimiter(clock=clock)
        for _ in range(3):
            limiter.check("heavy")
        limiter.check("light")

        stats = limiter.get_global_stats()
        assert stats["total_entries"] == 2
        assert stats["total_requests"] == 4
        assert stats["top_users"][0]["identity"] == "heavy"

    def test_cleanup_drops_expired_windows(self, clock):
        limiter = RateLimiter(RateLimitConfig(window_seconds=60), clock=clock)
        limiter.check("a")
        clock.advance(30)
        limiter.check("b")
        clock.advance(40)

        assert limiter.cleanup() == 1
        assert limiter.get_usage("b")["requests"] == 1

    def test_reset_one_or_all(self, clock):
        limiter = RateLimiter(RateLimitConfig(max_requests=1), clock=clock)
        limiter.check("a")
        limiter.check("b")

        limiter.reset("a")
        assert limiter.check_rate_limit("a") is True
        assert limiter.check_rate_limit("b") is False

        limiter.reset()
        assert limiter.check_rate_limit("b") is True


class TestConcurrency:
    """Test that concurrent callers never lose window updates."""

    def test_ceiling_holds_under_contention(self, clock):
        limiter = RateLimiter(RateLimitConfig(max_requests=50, window_seconds=3600), clock=clock)

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: limiter.check_rate_limit("u"), range(400)))

        assert results.count(True) == 50
        assert limiter.get_usage("u")["requests"] == 50

    def test_token_updates_are_not_lost(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.check("u")

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda _: limiter.record_tokens("u", 10), range(500)))

        assert limiter.get_usage("u")["tokens"] == 5000
