import threading

import pytest

from uploadshield.rate_limit import (
    InMemoryRateLimitStore,
    RateLimitConfig,
    RateLimitTier,
    UploadRateLimiter,
)

MIB = 1024 * 1024
IP = "203.0.113.7"


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return UploadRateLimiter(clock=clock)


# ─── Burst tier ───────────────────────────────────────────────────────────────

def test_eleventh_upload_in_a_minute_is_blocked(limiter, clock):
    for _ in range(10):
        assert limiter.check_upload(IP, file_size=1000).allowed
        clock.advance(1)

    decision = limiter.check_upload(IP, file_size=1000)
    assert not decision.allowed
    assert decision.tier == "burst"
    assert decision.remaining == 0
    assert decision.retry_after == 50
    assert "Rate limit exceeded (burst)" in decision.reason


def test_burst_window_expires(limiter, clock):
    for _ in range(10):
        limiter.check_upload(IP)
    assert not limiter.check_upload(IP).allowed
    clock.advance(60)
    assert limiter.check_upload(IP).allowed


def test_retry_after_is_at_least_one_second(limiter, clock):
    for _ in range(10):
        limiter.check_upload(IP)
    clock.advance(59.9)
    decision = limiter.check_upload(IP)
    assert not decision.allowed
    assert decision.retry_after == 1


def test_denial_records_nothing(limiter, clock):
    for _ in range(10):
        limiter.check_upload(IP, user_id="u1")
    for _ in range(5):
        limiter.check_upload(IP, user_id="u1")

    status = limiter.status(IP)
    assert status["tiers"]["burst"]["count"] == 10
    assert status["tiers"]["general"]["count"] == 10
    assert limiter.status("u1")["tiers"]["per_user"]["count"] == 10


def test_identities_are_independent(limiter):
    for _ in range(10):
        limiter.check_upload(IP)
    assert not limiter.check_upload(IP).allowed
    assert limiter.check_upload("198.51.100.1").allowed


# ─── Large file tier ──────────────────────────────────────────────────────────

def test_large_file_tier_only_counts_large_uploads(limiter, clock):
    for _ in range(5):
        assert limiter.check_upload(IP, file_size=11 * MIB).allowed
        clock.advance(61)

    assert limiter.check_upload(IP, file_size=MIB).allowed
    decision = limiter.check_upload(IP, file_size=11 * MIB)
    assert not decision.allowed
    assert decision.tier == "large_file"


def test_threshold_size_is_not_large(limiter):
    limiter.check_upload(IP, file_size=10 * MIB)
    assert "large_file" not in limiter.status(IP)["tiers"]


# ─── Suspicious tier ──────────────────────────────────────────────────────────

def test_suspicious_identity_gets_restricted_limits(limiter, clock):
    limiter.mark_suspicious(IP)
    for _ in range(5):
        assert limiter.check_upload(IP).allowed
        clock.advance(1)

    decision = limiter.check_upload(IP)
    assert not decision.allowed
    assert decision.tier == "suspicious"


def test_suspicious_tier_caps_total_bytes(limiter):
    limiter.mark_suspicious(IP)
    assert limiter.check_upload(IP, file_size=9 * MIB).allowed
    decision = limiter.check_upload(IP, file_size=45 * MIB)
    assert not decision.allowed
    assert decision.tier == "suspicious"
    assert "Upload size limit exceeded (suspicious): 50MB per 5 minutes" == decision.reason


def test_suspicious_user_is_tracked_by_user_id(limiter):
    limiter.mark_suspicious("u1")
    limiter.check_upload(IP, user_id="u1")
    assert limiter.status("u1")["tiers"]["suspicious"]["count"] == 1
    assert "suspicious" not in limiter.status(IP)["tiers"]


def test_suspicious_flag_lapses(limiter, clock):
    limiter.mark_suspicious(IP, duration_seconds=120)
    assert limiter.is_suspicious(IP)
    clock.advance(120)
    assert not limiter.is_suspicious(IP)


def test_zero_duration_is_not_the_default(limiter):
    limiter.mark_suspicious(IP, duration_seconds=0)
    assert not limiter.is_suspicious(IP)
    assert limiter.check_upload(IP).allowed
    assert "suspicious" not in limiter.status(IP)["tiers"]


def test_default_suspicious_duration_is_an_hour(limiter, clock):
    limiter.mark_suspicious(IP)
    clock.advance(3599)
    assert limiter.is_suspicious(IP)
    clock.advance(1)
    assert not limiter.is_suspicious(IP)


# ─── General and per-user tiers ───────────────────────────────────────────────

def test_general_tier_caps_total_bytes(limiter, clock):
    assert limiter.check_upload(IP, file_size=9 * MIB).allowed
    clock.advance(61)
    for _ in range(9):
        assert limiter.check_upload(IP, file_size=9 * MIB).allowed
    clock.advance(61)
    assert limiter.check_upload(IP, file_size=9 * MIB).allowed

    # 99MB already recorded in the 15 minute window
    decision = limiter.check_upload(IP, file_size=450 * MIB)
    assert not decision.allowed
    assert decision.tier == "general"
    assert decision.reason == "Upload size limit exceeded (general): 500MB per 15 minutes"


def test_general_tier_counts_uploads(clock):
    config = RateLimitConfig(burst=RateLimitTier("burst", 60, 1000))
    limiter = UploadRateLimiter(config, clock=clock)
    for _ in range(50):
        assert limiter.check_upload(IP).allowed
    decision = limiter.check_upload(IP)
    assert not decision.allowed
    assert decision.tier == "general"
    assert decision.retry_after == 900


def test_per_user_tier_follows_user_across_ips(clock):
    config = RateLimitConfig(per_user=RateLimitTier("per_user", 3600, 3))
    limiter = UploadRateLimiter(config, clock=clock)
    for index in range(3):
        assert limiter.check_upload(f"10.0.0.{index}", user_id="u1").allowed
    decision = limiter.check_upload("10.0.0.9", user_id="u1")
    assert not decision.allowed
    assert decision.tier == "per_user"


def test_anonymous_uploads_skip_per_user_tier(limiter):
    limiter.check_upload(IP, user_id=None)
    assert "per_user" not in limiter.status(IP)["tiers"]


# ─── Decisions and housekeeping ───────────────────────────────────────────────

def test_allowed_decision_reports_general_quota(limiter, clock):
    decision = limiter.check_upload(IP)
    assert decision.allowed
    assert decision.tier == "general"
    assert decision.limit == 50
    assert decision.remaining == 49
    assert decision.reset_at == clock.now + 900
    headers = decision.headers()
    assert headers["X-RateLimit-Remaining"] == "49"
    assert "Retry-After" not in headers


def test_denied_decision_headers_include_retry_after(limiter):
    for _ in range(10):
        limiter.check_upload(IP)
    headers = limiter.check_upload(IP).headers()
    assert headers["Retry-After"] == "60"
    assert headers["X-RateLimit-Limit"] == "10"


def test_cleanup_removes_only_expired_entries(limiter, clock):
    limiter.check_upload(IP, user_id="u1")
    clock.advance(61)
    assert limiter.cleanup_expired() == 1
    assert "burst" not in limiter.status(IP)["tiers"]
    assert "general" in limiter.status(IP)["tiers"]

    clock.advance(3600)
    assert limiter.cleanup_expired() == 2
    assert list(limiter.store.items()) == []


def test_status_reports_suspicious_flag(limiter):
    limiter.mark_suspicious(IP)
    status = limiter.status(IP)
    assert status == {"identifier": IP, "tiers": {}, "is_suspicious": True}


def test_store_hands_out_copies():
    store = InMemoryRateLimitStore()
    limiter = UploadRateLimiter(store=store)
    limiter.check_upload(IP)
    entry = store.get("burst", IP)
    entry.count = 99
    assert store.get("burst", IP).count == 1


def test_concurrent_requests_never_exceed_the_limit():
    limiter = UploadRateLimiter()
    results = []
    barrier = threading.Barrier(20)

    def hit():
        barrier.wait()
        results.append(limiter.check_upload(IP).allowed)

    threads = [threading.Thread(target=hit) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 10
