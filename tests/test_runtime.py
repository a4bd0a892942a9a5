import asyncio

import pytest

from coursegate.config import Settings
from coursegate.service.runtime import (
    LocalRateLimiter,
    _build_cache,
    _mask_url_password,
    check_rate_limit,
    get_runtime,
)

SECRET = "runtime-test-secret-key-with-enough-length-0123"


class TickClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestLocalRateLimiter:
    def test_denies_after_limit_and_reports_wait(self):
        clock = TickClock()
        limiter = LocalRateLimiter(clock=clock)

        results = [limiter.take("login:a", 3, 60) for _ in range(3)]
        assert [allowed for allowed, _, _ in results] == [True, True, True]
        assert results[-1][1] == 0

        allowed, remaining, reset_seconds = limiter.take("login:a", 3, 60)
        assert allowed is False
        assert remaining == 0
        assert reset_seconds == 20

    def test_refills_over_window(self):
        clock = TickClock()
        limiter = LocalRateLimiter(clock=clock)
        for _ in range(3):
            limiter.take("k", 3, 60)

        clock.now += 20
        assert limiter.take("k", 3, 60)[0] is True
        assert limiter.take("k", 3, 60)[0] is False

    def test_keys_are_independent(self):
        limiter = LocalRateLimiter(clock=TickClock())
        limiter.take("one", 1, 60)

        assert limiter.take("one", 1, 60)[0] is False
        assert limiter.take("two", 1, 60)[0] is True


class TestCheckRateLimit:
    def test_uses_local_limiter_without_redis(self):
        runtime = get_runtime()
        assert runtime.cache is None

        first = asyncio.run(check_rate_limit(runtime, "recovery:x", 1, 60))
        second = asyncio.run(
            check_rate_limit(runtime, "recovery:x", 1, 60, return_remaining=True)
        )

        assert first is True
        assert second[0] is False
        assert second[2] >= 1

    def test_non_positive_limit_disables_check(self):
        assert asyncio.run(check_rate_limit(get_runtime(), "k", 0, 60)) is True


class TestBuildCache:
    def test_missing_redis_refused_outside_test_mode(self, tmp_path):
        settings = Settings(
            shared_fs_root=str(tmp_path),
            jwt_secret=SECRET,
            redis_url=None,
            test_mode=False,
            allow_redis_fallback_dev=False,
        )
        with pytest.raises(RuntimeError, match="Redis is required"):
            _build_cache(settings)

    def test_dev_fallback_returns_none(self, tmp_path):
        settings = Settings(
            shared_fs_root=str(tmp_path),
            jwt_secret=SECRET,
            redis_url=None,
            allow_redis_fallback_dev=True,
        )
        assert _build_cache(settings) is None


def test_mask_url_password():
    assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
    assert _mask_url_password(None) is None
