"""
Rate Limiter Tests - 每分钟请求数限制测试
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from toolify_proxy.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestSlidingWindowRateLimiter:
    """测试滑动窗口限流"""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self):
        limiter = SlidingWindowRateLimiter(max_requests=2, clock=FakeClock())
        assert await limiter.try_acquire()
        assert await limiter.try_acquire()
        assert not await limiter.try_acquire()

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_requests=1, clock=clock)
        assert await limiter.try_acquire()
        clock.now += 30
        assert not await limiter.try_acquire()
        assert limiter.retry_after() == pytest.approx(30)
        clock.now += 30
        assert await limiter.try_acquire()

    @pytest.mark.asyncio
    async def test_disabled_when_zero(self):
        limiter = SlidingWindowRateLimiter(max_requests=0)
        assert not limiter.enabled
        for _ in range(100):
            assert await limiter.try_acquire()
        assert limiter.retry_after() is None

    @pytest.mark.asyncio
    async def test_reset(self):
        limiter = SlidingWindowRateLimiter(max_requests=1, clock=FakeClock())
        await limiter.try_acquire()
        limiter.reset()
        assert await limiter.try_acquire()


class TestRateLimitError:
    """测试 429 错误携带 Retry-After"""

    def test_retry_after_header(self):
        from toolify_proxy.errors import RateLimitError

        assert RateLimitError("slow down", retry_after=12.3).headers == {"Retry-After": "13"}
        assert RateLimitError("slow down", retry_after=0.0).headers == {"Retry-After": "1"}
        assert RateLimitError("slow down").headers is None
