"""
节点 CSR 审批的数据模型定义。
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress

from .constants import APPROVED_CONDITION


class CSRCondition(BaseModel):
    """
    CSR 生命周期条件（Approved / Denied / Failed）。
    """
    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""
    last_update_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CertificateSigningRequest(BaseModel):
    """
    集群中 CertificateSigningRequest 对象的只读视图，以及可追加的 conditions。
    """
    name: str
    uid: str | None = None
    resource_version: str | None = None
    signer_name: str = ""
    username: str = ""
    groups: List[str] = Field(default_factory=list)
    usages: List[str] = Field(default_factory=list)
    extra: Dict[str, List[str]] = Field(default_factory=dict)
    request: bytes = b""  # PEM 格式的证书请求
    conditions: List[CSRCondition] = Field(default_factory=list)

    @property
    def key(self) -> str:
        # CSR 为集群级资源，key 即名称
        return self.name

    def is_approved(self) -> bool:
        return any(c.type == APPROVED_CONDITION for c in self.conditions)


class ParsedCertificateRequest(BaseModel):
    """
    从 PEM 证书请求中解析出的字段，每次调和时重新生成。
    """
    model_config = ConfigDict(frozen=True)

    common_name: str = ""
    organizations: Tuple[str, ...] = ()
    dns_names: Tuple[str, ...] = ()
    ip_addresses: Tuple[IPvAnyAddress, ...] = ()


class MachineAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    address: str


class Machine(BaseModel):
    """
    机器清单中的一台机器；node_ref 为其承载的节点名，未绑定时为 None。
    """
    model_config = ConfigDict(frozen=True)

    name: str
    node_ref: Optional[str] = None
    addresses: Tuple[MachineAddress, ...] = ()


class MachineList(BaseModel):
    """
    某一时刻的机器清单快照，获取后不可修改。
    """
    model_config = ConfigDict(frozen=True)

    items: Tuple[Machine, ...] = ()


class DecisionKind(str, Enum):
    APPROVE = "approve"
    SKIP = "skip"
    ERROR = "error"


class ReconcileDecision(BaseModel):
    """
    单次调和的结果：批准、跳过（不重试）或错误（需要重试）。
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: DecisionKind
    reason: str = ""
    message: str = ""
    error: Optional[BaseException] = None

    @classmethod
    def approve(cls, reason: str, message: str) -> "ReconcileDecision":
        return cls(kind=DecisionKind.APPROVE, reason=reason, message=message)

    @classmethod
    def skip(cls, reason: str) -> "ReconcileDecision":
        return cls(kind=DecisionKind.SKIP, reason=reason)

    @classmethod
    def failed(cls, error: BaseException) -> "ReconcileDecision":
        return cls(kind=DecisionKind.ERROR, reason=str(error), error=error)

    @property
    def is_error(self) -> bool:
        return self.kind is DecisionKind.ERROR
