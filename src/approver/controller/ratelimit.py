"""
工作队列的重试限速器。

- ItemExponentialFailureRateLimiter: 按 key 计数的指数退避
- BucketRateLimiter: 全局令牌桶
- MaxOfRateLimiter: 取多个限速器中最长的等待时间
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Hashable


class ItemExponentialFailureRateLimiter:
    """每个 key 连续失败一次，延迟翻倍：base_delay * 2**failures，上限 max_delay。"""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(key, 0)
            self._failures[key] = exp + 1
        # 避免指数过大导致溢出
        if exp > 64:
            return self.max_delay
        return min(self.base_delay * (2 ** exp), self.max_delay)

    def num_requeues(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)


class BucketRateLimiter:
    """整体令牌桶，不区分 key；只限制重试的总速率。"""

    def __init__(self, qps: float = 10.0, burst: int = 100, clock: Callable[[], float] = time.monotonic):
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            # 预留一个令牌，不足时返回需要等待的时间
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, key: Hashable) -> int:
        return 0

    def forget(self, key: Hashable) -> None:
        pass


class MaxOfRateLimiter:
    def __init__(self, *limiters):
        if not limiters:
            raise ValueError("至少需要一个限速器")
        self.limiters = limiters

    def when(self, key: Hashable) -> float:
        return max(limiter.when(key) for limiter in self.limiters)

    def num_requeues(self, key: Hashable) -> int:
        return max(limiter.num_requeues(key) for limiter in self.limiters)

    def forget(self, key: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(key)


def default_controller_rate_limiter(base_delay: float = 0.005, max_delay: float = 1000.0) -> MaxOfRateLimiter:
    """按 key 的指数退避与整体 10 qps / 100 突发令牌桶的组合。"""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps=10.0, burst=100),
    )
