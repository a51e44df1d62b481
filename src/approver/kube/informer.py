"""
CSR 的 list + watch 本地缓存。

首次全量 list 完成后 has_synced() 返回 True，之后通过 watch 增量更新；
每次新增或修改都会回调 on_change(key)，由调用方入队。
watch 过期（HTTP 410）时重新 list。
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Optional, Tuple

from kubernetes import client, watch
from kubernetes.client import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from src.approver.csr.schemas import CertificateSigningRequest
from .clients import csr_from_k8s


class CSRStore:
    """线程安全的 key -> CSR 缓存。"""

    def __init__(self):
        self._items: Dict[str, CertificateSigningRequest] = {}
        self._lock = threading.Lock()

    def get_by_key(self, key: str) -> Tuple[Optional[CertificateSigningRequest], bool]:
        with self._lock:
            obj = self._items.get(key)
        return obj, obj is not None

    def add(self, csr: CertificateSigningRequest) -> None:
        with self._lock:
            self._items[csr.key] = csr

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def replace(self, items) -> None:
        with self._lock:
            self._items = {csr.key: csr for csr in items}


class CSRInformer:
    def __init__(
        self,
        api_client: client.ApiClient | None = None,
        on_change: Callable[[str], None] | None = None,
        store: CSRStore | None = None,
        watch_timeout: int = 60,
        retry_interval: float = 1.0,
    ):
        self._api = client.CertificatesV1Api(api_client)
        self.on_change = on_change or (lambda key: None)
        self.store = store or CSRStore()
        self.watch_timeout = watch_timeout
        self.retry_interval = retry_interval
        self._synced = threading.Event()

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def relist(self) -> str:
        """全量同步缓存，返回列表的 resourceVersion。"""
        resp = self._api.list_certificate_signing_request()
        items = [csr_from_k8s(obj) for obj in resp.items or []]
        self.store.replace(items)
        self._synced.set()
        logger.info(f"已同步 {len(items)} 个 CSR")
        for csr in items:
            self.on_change(csr.key)
        return resp.metadata.resource_version

    def handle_event(self, event_type: str, obj) -> None:
        if event_type in ("ADDED", "MODIFIED"):
            csr = csr_from_k8s(obj)
            self.store.add(csr)
            self.on_change(csr.key)
        elif event_type == "DELETED":
            self.store.delete(obj.metadata.name)

    def watch_changes(self, resource_version: str, stop_event: threading.Event) -> Optional[str]:
        """
        从 resource_version 开始 watch，直到超时或停止。
        :return: 最新的 resourceVersion；watch 过期需要重新 list 时返回 None。
        """
        w = watch.Watch()
        try:
            for event in w.stream(
                self._api.list_certificate_signing_request,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout,
            ):
                if stop_event.is_set():
                    break
                if event["type"] == "ERROR":
                    code = (event.get("raw_object") or {}).get("code")
                    logger.info(f"watch 返回错误 (code={code})，重新同步")
                    return None
                obj = event["object"]
                self.handle_event(event["type"], obj)
                resource_version = obj.metadata.resource_version or resource_version
        except ApiException as e:
            if e.status == 410:
                logger.info("watch 已过期，重新同步")
                return None
            raise
        finally:
            w.stop()
        return resource_version

    def run(self, stop_event: threading.Event) -> None:
        resource_version: Optional[str] = None
        while not stop_event.is_set():
            try:
                if resource_version is None:
                    resource_version = self.relist()
                resource_version = self.watch_changes(resource_version, stop_event)
            except (ApiException, HTTPError) as e:
                logger.warning(f"CSR list/watch 失败: {e}")
                resource_version = None
                stop_event.wait(self.retry_interval)
            except Exception as e:
                logger.exception(f"CSR list/watch 发生未预期的错误: {e}")
                resource_version = None
                stop_event.wait(self.retry_interval)
        logger.info("CSR informer 已停止")
