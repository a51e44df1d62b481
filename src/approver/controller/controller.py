"""
基于工作队列的 CSR 审批控制器。

从队列中取出 key 交给 Reconciler 处理：
- 成功：清除该 key 的重试计数
- 暂时性错误：未超过重试上限时按退避时间重新入队，否则丢弃并记录一次错误
"""

from __future__ import annotations

import threading
import time
from typing import Callable, List, Optional

from loguru import logger

from src.approver.csr.schemas import ReconcileDecision
from .reconciler import Reconciler
from .workqueue import RateLimitingQueue

MAX_RETRIES = 5


def wait_for_cache_sync(
    stop_event: threading.Event,
    *has_synced: Callable[[], bool],
    timeout: Optional[float] = None,
    poll_interval: float = 0.1,
) -> bool:
    """等待所有缓存完成首次同步；停止信号或超时返回 False。"""
    deadline = None if timeout is None else time.monotonic() + timeout
    while not all(fn() for fn in has_synced):
        if stop_event.is_set():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop_event.wait(poll_interval)
    return True


class Controller:
    def __init__(
        self,
        reconciler: Reconciler,
        queue: RateLimitingQueue,
        informer,
        max_retries: int = MAX_RETRIES,
        cache_sync_timeout: Optional[float] = 60.0,
    ):
        self.reconciler = reconciler
        self.queue = queue
        self.informer = informer
        self.max_retries = max_retries
        self.cache_sync_timeout = cache_sync_timeout

    def process_next_item(self) -> bool:
        """处理队列中的下一个 key；队列关闭时返回 False。"""
        key, quit = self.queue.get()
        if quit:
            return False
        try:
            try:
                decision = self.reconciler.reconcile(key)
            except Exception as e:
                logger.exception(f"调和 CSR {key} 时发生未预期的错误: {e}")
                decision = ReconcileDecision.failed(e)
            self.handle_err(decision.error if decision.is_error else None, key)
        finally:
            self.queue.done(key)
        return True

    def handle_err(self, err: Optional[BaseException], key) -> None:
        if err is None:
            self.queue.forget(key)
            return

        if self.queue.num_requeues(key) < self.max_retries:
            logger.info(f"同步 CSR {key} 出错: {err}")
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        logger.error(f"重试次数已用尽，将 CSR {key} 移出队列: {err}")

    def run_worker(self) -> None:
        while self.process_next_item():
            pass

    def _run_until(self, stop_event: threading.Event) -> None:
        # 工作线程意外退出后每秒重启一次，直到停止
        while not stop_event.is_set():
            try:
                self.run_worker()
            except Exception as e:
                logger.exception(f"工作线程异常退出: {e}")
            if self.queue.shutting_down():
                return
            stop_event.wait(1.0)

    def run(self, workers: int, stop_event: threading.Event) -> bool:
        """
        启动 informer 与 workers 个工作线程，阻塞直到 stop_event 被设置。
        :return: 缓存同步失败时返回 False。
        """
        logger.info("启动 Machine Approver")
        informer_thread = threading.Thread(
            target=self.informer.run, args=(stop_event,), name="csr-informer", daemon=True
        )
        informer_thread.start()

        threads: List[threading.Thread] = []
        try:
            if not wait_for_cache_sync(stop_event, self.informer.has_synced, timeout=self.cache_sync_timeout):
                logger.error("等待缓存同步超时")
                return False

            for i in range(workers):
                t = threading.Thread(target=self._run_until, args=(stop_event,), name=f"csr-worker-{i}")
                t.start()
                threads.append(t)

            stop_event.wait()
            return True
        finally:
            logger.info("正在停止 Machine Approver")
            self.queue.shut_down()
            for t in threads:
                t.join()
            if stop_event.is_set():
                informer_thread.join(timeout=5)
