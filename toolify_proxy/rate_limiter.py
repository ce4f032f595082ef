"""
Rate Limiter - 每分钟请求数限制

滑动窗口：记录最近 60 秒内被放行的请求时间戳，超过上限的请求直接拒绝（429），
不排队等待，由客户端自行重试。
"""

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Optional

from log import log

WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """
    滑动窗口速率限制器

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=10)
        if not await limiter.try_acquire():
            raise RateLimitError(...)

    max_requests <= 0 表示不限制。
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._max_requests > 0

    def _evict(self, now: float) -> None:
        threshold = now - self._window
        while self._timestamps and self._timestamps[0] <= threshold:
            self._timestamps.popleft()

    async def try_acquire(self) -> bool:
        """尝试占用一个名额，成功返回 True"""
        if not self.enabled:
            return True

        async with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._timestamps) >= self._max_requests:
                log.warning(
                    "Rate limit exceeded",
                    tag="RATE_LIMITER",
                    limit=self._max_requests,
                    window_seconds=self._window,
                )
                return False
            self._timestamps.append(now)
            return True

    def retry_after(self) -> Optional[float]:
        """距离最早的名额释放还有多少秒，未满时返回 None"""
        if not self.enabled or len(self._timestamps) < self._max_requests:
            return None
        return max(0.0, self._timestamps[0] + self._window - self._clock())

    def reset(self) -> None:
        """重置限制器状态（用于测试或配置重载）"""
        self._timestamps.clear()
