"""
集群 API 客户端封装：CSR 审批写回与机器清单读取，
以及 Kubernetes 对象与本地数据模型之间的转换。
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Dict

from kubernetes import client
from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from src.approver.csr.schemas import (
    CertificateSigningRequest,
    CSRCondition,
    Machine,
    MachineAddress,
    MachineList,
)
from src.approver.errors import ApprovalUpdateError, MachineAPIUnavailableError

MACHINE_API_GROUP = "machine.openshift.io"
MACHINE_API_VERSION = "v1beta1"
MACHINE_PLURAL = "machines"


def _decode_request(value: Any) -> bytes:
    """REST API 中 request 为 Base64 字符串；无法解码时原样保留，由解析阶段拒绝。"""
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return str(value).encode("utf-8")


def csr_from_k8s(obj: client.V1CertificateSigningRequest) -> CertificateSigningRequest:
    metadata = obj.metadata
    spec = obj.spec
    conditions = []
    if obj.status is not None and obj.status.conditions:
        for c in obj.status.conditions:
            fields: Dict[str, Any] = {
                "type": c.type,
                "status": c.status or "True",
                "reason": c.reason or "",
                "message": c.message or "",
            }
            updated = c.last_update_time or c.last_transition_time
            if updated is not None:
                fields["last_update_time"] = updated
            conditions.append(CSRCondition(**fields))
    return CertificateSigningRequest(
        name=metadata.name,
        uid=metadata.uid,
        resource_version=metadata.resource_version,
        signer_name=spec.signer_name or "",
        username=spec.username or "",
        groups=list(spec.groups or []),
        usages=list(spec.usages or []),
        extra=dict(spec.extra or {}),
        request=_decode_request(spec.request),
        conditions=conditions,
    )


def csr_to_k8s(csr: CertificateSigningRequest) -> client.V1CertificateSigningRequest:
    return client.V1CertificateSigningRequest(
        api_version="certificates.k8s.io/v1",
        kind="CertificateSigningRequest",
        metadata=client.V1ObjectMeta(
            name=csr.name,
            uid=csr.uid,
            resource_version=csr.resource_version,
        ),
        spec=client.V1CertificateSigningRequestSpec(
            request=base64.b64encode(csr.request).decode("utf-8"),
            signer_name=csr.signer_name,
            username=csr.username or None,
            groups=csr.groups or None,
            usages=csr.usages or None,
            extra=csr.extra or None,
        ),
        status=client.V1CertificateSigningRequestStatus(
            conditions=[
                client.V1CertificateSigningRequestCondition(
                    type=c.type,
                    status=c.status,
                    reason=c.reason or None,
                    message=c.message or None,
                    last_update_time=c.last_update_time,
                )
                for c in csr.conditions
            ]
        ),
    )


def machine_from_dict(item: Dict[str, Any]) -> Machine:
    metadata = item.get("metadata") or {}
    status = item.get("status") or {}
    node_ref = status.get("nodeRef") or {}
    addresses = tuple(
        MachineAddress(type=str(a.get("type", "")), address=str(a.get("address", "")))
        for a in status.get("addresses") or []
    )
    return Machine(
        name=str(metadata.get("name", "")),
        node_ref=node_ref.get("name") or None,
        addresses=addresses,
    )


class CSRClient:
    def __init__(self, api_client: client.ApiClient | None = None):
        self._api = client.CertificatesV1Api(api_client)

    def update_approval(self, csr: CertificateSigningRequest) -> None:
        """
        写回 CSR 的 conditions（approval 子资源）。
        :raises ApprovalUpdateError: API 调用失败。
        """
        try:
            self._api.replace_certificate_signing_request_approval(
                name=csr.name, body=csr_to_k8s(csr)
            )
        except (ApiException, HTTPError) as e:
            raise ApprovalUpdateError(f"更新 CSR {csr.name} 审批状态失败: {e}") from e


class MachineClient:
    def __init__(self, api_client: client.ApiClient | None = None):
        self._api = client.CustomObjectsApi(api_client)

    def list_machines(self, namespace: str) -> MachineList:
        """
        :raises MachineAPIUnavailableError: 机器 API 不可用。
        """
        try:
            resp = self._api.list_namespaced_custom_object(
                group=MACHINE_API_GROUP,
                version=MACHINE_API_VERSION,
                namespace=namespace,
                plural=MACHINE_PLURAL,
            )
        except (ApiException, HTTPError) as e:
            raise MachineAPIUnavailableError(f"列出命名空间 {namespace} 中的机器失败: {e}") from e
        return MachineList(items=tuple(machine_from_dict(i) for i in resp.get("items") or []))
