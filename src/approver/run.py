#!/usr/bin/env python
"""
Machine Approver 入口：连接集群并运行节点 CSR 自动审批控制器。

用法：python -m src.approver.run --kubeconfig ~/.kube/config [--master URL]
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from src.approver.config import Config
from src.approver.controller.controller import Controller
from src.approver.controller.ratelimit import default_controller_rate_limiter
from src.approver.controller.reconciler import Reconciler
from src.approver.controller.workqueue import RateLimitingQueue
from src.approver.errors import KubeConnectionError
from src.approver.kube.clients import CSRClient, MachineClient
from src.approver.kube.connection import build_api_client
from src.approver.kube.informer import CSRInformer


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Node CSR approver")
    parser.add_argument("--kubeconfig", default=None, help="absolute path to the kubeconfig file")
    parser.add_argument("--master", default=None, help="master url")
    parser.add_argument("--workers", type=int, default=None, help="number of concurrent workers")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> Config:
    """命令行参数优先于环境变量与配置文件。"""
    overrides = {
        k: v
        for k, v in {"kubeconfig": args.kubeconfig, "master": args.master, "workers": args.workers}.items()
        if v is not None
    }
    return Config(**overrides)


def build_controller(cfg: Config, api_client) -> Controller:
    queue = RateLimitingQueue(
        default_controller_rate_limiter(cfg.base_retry_delay, cfg.max_retry_delay)
    )
    informer = CSRInformer(api_client, on_change=queue.add)
    reconciler = Reconciler(
        informer.store,
        CSRClient(api_client),
        MachineClient(api_client),
        machine_namespace=cfg.machine_api_namespace,
    )
    return Controller(
        reconciler,
        queue,
        informer,
        max_retries=cfg.max_retries,
        cache_sync_timeout=cfg.cache_sync_timeout,
    )


def main(argv=None) -> int:
    load_dotenv(Path.cwd() / ".env")
    args = parse_args(argv)
    cfg = load_config(args)

    logger.remove()
    logger.add(sys.stderr, level=cfg.log_level)
    logger.info("Machine Approver, start running!")

    try:
        api_client = build_api_client(cfg.kubeconfig, cfg.master)
    except KubeConnectionError as e:
        logger.critical(f"连接集群失败: {e}")
        return 1

    controller = build_controller(cfg, api_client)

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info(f"收到信号 {signum}，准备退出")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    if not controller.run(cfg.workers, stop_event):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
