"""
带去重、延迟与限速的线程安全工作队列。

语义：
- 同一个 key 在等待处理期间多次 add 只会入队一次（dirty 集合）。
- 正在处理中的 key（processing 集合）再次 add 时不会并发下发，
  而是在 done() 之后重新入队，保证每个 key 同一时刻至多一个调和。
- add_after 将 key 放入按就绪时间排序的堆，到期后才进入队列。
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple

from .ratelimit import default_controller_rate_limiter


class RateLimitingQueue:
    def __init__(self, rate_limiter=None, clock: Callable[[], float] = time.monotonic):
        self._rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: Dict[Hashable, float] = {}
        self._heap: List[Tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key: Hashable) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """delay 秒后再入队；同一个 key 只保留最早的就绪时间。"""
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return
            ready_at = self._clock() + delay
            current = self._waiting.get(key)
            if current is not None and current <= ready_at:
                return
            self._waiting[key] = ready_at
            heapq.heappush(self._heap, (ready_at, next(self._seq), key))
            # 唤醒等待中的 get，重新计算超时
            self._cond.notify_all()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._heap)
            # 堆中可能残留已被更早时间覆盖的条目
            if self._waiting.get(key) != ready_at:
                continue
            del self._waiting[key]
            self._add_locked(key)

    def _next_ready_in_locked(self) -> Optional[float]:
        if not self._heap:
            return None
        return max(self._heap[0][0] - self._clock(), 0.0)

    def get(self) -> Tuple[Optional[Hashable], bool]:
        """
        阻塞直到有可处理的 key。
        :return: (key, shutdown)；队列关闭且已清空时返回 (None, True)。
        """
        with self._cond:
            while True:
                self._promote_ready_locked()
                if self._queue:
                    break
                if self._shutting_down:
                    return None, True
                self._cond.wait(self._next_ready_in_locked())
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key, False

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> None:
        self.add_after(key, self._rate_limiter.when(key))

    def forget(self, key: Hashable) -> None:
        self._rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self._rate_limiter.num_requeues(key)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
