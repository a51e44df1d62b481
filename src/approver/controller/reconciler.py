"""
单个 CSR 的调和逻辑。

流程：读取缓存 -> 已批准则跳过 -> 解析证书请求 -> 获取机器清单并授权
（清单不可用时降级为仅身份校验）-> 追加 Approved 条件并持久化。

所有 I/O 都在这里完成，校验本身由 csr.core 中的纯函数负责。
"""

from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger

from src.approver.csr import core
from src.approver.csr.constants import (
    APPROVAL_MESSAGE,
    APPROVAL_REASON,
    APPROVED_CONDITION,
    DEGRADED_SUFFIX,
)
from src.approver.csr.schemas import (
    CertificateSigningRequest,
    CSRCondition,
    ReconcileDecision,
)
from src.approver.errors import (
    ApprovalUpdateError,
    MachineAPIUnavailableError,
    StoreError,
)


class Reconciler:
    """
    :param store: 提供 get_by_key(key) -> (obj, exists) 的本地缓存。
    :param csr_client: 提供 update_approval(csr) 的集群客户端。
    :param machine_client: 提供 list_machines(namespace) -> MachineList 的客户端。
    """

    def __init__(self, store, csr_client, machine_client, machine_namespace: str = "openshift-machine-api"):
        self.store = store
        self.csr_client = csr_client
        self.machine_client = machine_client
        self.machine_namespace = machine_namespace

    def reconcile(self, key: str) -> ReconcileDecision:
        try:
            obj, exists = self.store.get_by_key(key)
        except StoreError as e:
            logger.error(f"从缓存读取 CSR {key} 失败: {e}")
            return ReconcileDecision.failed(e)

        if not exists:
            logger.info(f"CSR {key} 已不存在")
            return ReconcileDecision.skip("not_found")

        # 拷贝一份，避免修改缓存中的对象
        csr: CertificateSigningRequest = obj.model_copy(deep=True)
        logger.info(f"CSR {csr.name} 已加入处理")

        if csr.is_approved():
            logger.info(f"CSR {csr.name} 已被批准")
            return ReconcileDecision.skip("already_approved")

        try:
            parsed = core.parse_csr(csr.request)
        except core.CSRParseError as e:
            logger.info(f"解析 CSR {csr.name} 失败: {e}")
            return ReconcileDecision.skip("parse_error")

        message = APPROVAL_MESSAGE
        try:
            machines = self.machine_client.list_machines(self.machine_namespace)
        except MachineAPIUnavailableError as e:
            logger.info(f"机器 API 不可用: {e}")
            machines = None

        if machines is not None:
            try:
                core.authorize_csr(machines, csr, parsed)
            except core.CSRRejectedError as e:
                logger.info(f"CSR {csr.name} 未通过授权 ({e.reason.value}): {e}")
                return ReconcileDecision.skip(e.reason.value)
        else:
            try:
                core.validate_csr_contents(csr, parsed)
            except core.CSRRejectedError as e:
                logger.info(f"CSR {csr.name} 校验失败 ({e.reason.value}): {e}")
                return ReconcileDecision.skip(e.reason.value)
            message += DEGRADED_SUFFIX

        return self._approve(csr, message)

    def _approve(self, csr: CertificateSigningRequest, message: str) -> ReconcileDecision:
        csr.conditions.append(
            CSRCondition(
                type=APPROVED_CONDITION,
                reason=APPROVAL_REASON,
                message=message,
                last_update_time=datetime.now(timezone.utc),
            )
        )
        try:
            self.csr_client.update_approval(csr)
        except ApprovalUpdateError as e:
            logger.warning(f"持久化 CSR {csr.name} 审批结果失败: {e}")
            return ReconcileDecision.failed(e)

        logger.info(f"CSR {csr.name} 已批准")
        return ReconcileDecision.approve(APPROVAL_REASON, message)
