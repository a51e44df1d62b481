"""
节点 CSR 审批的核心逻辑实现。
包括解析证书请求、校验请求身份、以及基于机器清单校验 SAN。

本模块只包含纯函数，不做任何网络或集群 I/O。
"""

import base64
import binascii
from enum import Enum
from typing import List, Sequence, Tuple

from cryptography import x509
from cryptography.x509.oid import NameOID

from .constants import (
    AUTHENTICATED_GROUP,
    DNS_ADDRESS_TYPES,
    IP_ADDRESS_TYPES,
    NODE_GROUP,
    NODE_USER_PREFIX,
    REQUIRED_USAGES,
)
from .schemas import (
    CertificateSigningRequest,
    Machine,
    MachineList,
    ParsedCertificateRequest,
)


class RejectionReason(str, Enum):
    BAD_USERNAME_PREFIX = "bad_username_prefix"
    EMPTY_NODE_NAME = "empty_node_name"
    TOO_FEW_GROUPS = "too_few_groups"
    MISSING_GROUPS = "missing_groups"
    BAD_USAGE_COUNT = "bad_usage_count"
    BAD_USAGES = "bad_usages"
    COMMON_NAME_MISMATCH = "common_name_mismatch"
    MISSING_ORGANIZATION = "missing_organization"
    INVALID_REQUEST = "invalid_request"
    NO_TARGET_MACHINE = "no_target_machine"
    DNS_NAME_MISMATCH = "dns_name_mismatch"
    IP_ADDRESS_MISMATCH = "ip_address_mismatch"


class CSRParseError(ValueError):
    """证书请求无法解析。格式错误的请求永远不会变得可解析，因此不重试。"""


class CSRRejectedError(ValueError):
    """
    策略拒绝：身份或 SAN 校验未通过。
    :param reason: 具体的拒绝原因。
    :param attempted: SAN 校验失败时，参与比较的全部机器地址。
    """

    def __init__(self, reason: RejectionReason, message: str, attempted: Sequence[str] = ()):
        super().__init__(message)
        self.reason = reason
        self.attempted = list(attempted)


def _load_csr(raw: bytes | str) -> x509.CertificateSigningRequest:
    data = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
    data = data.strip()
    if not data:
        raise CSRParseError("证书请求为空")

    if data.startswith(b"-----BEGIN"):
        return x509.load_pem_x509_csr(data)

    # REST API 中的 request 字段为 Base64 编码的 PEM
    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        decoded = None
    if decoded and decoded.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_csr(decoded.strip())

    return x509.load_der_x509_csr(data)


def parse_csr(raw: bytes | str) -> ParsedCertificateRequest:
    """
    解析证书请求，提取 CN、O 与 SAN。
    :param raw: PEM 格式的证书请求，或 Base64 编码的 PEM，或 DER。
    :return: ParsedCertificateRequest。
    :raises CSRParseError: 如果无法解析。
    """
    try:
        csr = _load_csr(raw)
        subject = csr.subject
        cn_attrs = subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        # 多个 CN 时签出的证书会携带全部 CN，无法与单一身份绑定
        if len(cn_attrs) > 1:
            raise CSRParseError(f"证书请求包含 {len(cn_attrs)} 个 CommonName")
        common_name = str(cn_attrs[0].value) if cn_attrs else ""
        organizations = tuple(
            str(attr.value) for attr in subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
        )
        try:
            san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            dns_names = tuple(san.get_values_for_type(x509.DNSName))
            ip_addresses = tuple(san.get_values_for_type(x509.IPAddress))
        except x509.ExtensionNotFound:
            dns_names, ip_addresses = (), ()
    except CSRParseError:
        raise
    except (ValueError, x509.DuplicateExtension, x509.UnsupportedGeneralNameType) as e:
        raise CSRParseError(f"无效的 CSR 格式: {e}") from e

    return ParsedCertificateRequest(
        common_name=common_name,
        organizations=organizations,
        dns_names=dns_names,
        ip_addresses=ip_addresses,
    )


def validate_csr_contents(req: CertificateSigningRequest, csr: ParsedCertificateRequest) -> str:
    """
    校验请求者声明的身份是否自洽，按顺序检查，遇到第一个失败即返回。
    :return: 请求中的节点名。
    :raises CSRRejectedError: 任一检查失败。
    """
    if not req.username.startswith(NODE_USER_PREFIX):
        raise CSRRejectedError(
            RejectionReason.BAD_USERNAME_PREFIX,
            f"用户名 {req.username!r} 不以 {NODE_USER_PREFIX!r} 开头",
        )
    node_name = req.username[len(NODE_USER_PREFIX):]
    if len(node_name) < 1:
        raise CSRRejectedError(RejectionReason.EMPTY_NODE_NAME, "节点名为空")

    if len(req.groups) < 2:
        raise CSRRejectedError(
            RejectionReason.TOO_FEW_GROUPS, f"用户组过少: {len(req.groups)}"
        )
    missing_groups = sorted({NODE_GROUP, AUTHENTICATED_GROUP} - set(req.groups))
    if missing_groups:
        raise CSRRejectedError(
            RejectionReason.MISSING_GROUPS, f"缺少用户组: {', '.join(missing_groups)}"
        )

    if len(req.usages) != len(REQUIRED_USAGES):
        raise CSRRejectedError(
            RejectionReason.BAD_USAGE_COUNT, f"用途数量不符: {len(req.usages)}"
        )
    if set(req.usages) != REQUIRED_USAGES:
        raise CSRRejectedError(
            RejectionReason.BAD_USAGES, f"用途不符: {', '.join(req.usages)}"
        )

    if csr.common_name != req.username:
        raise CSRRejectedError(
            RejectionReason.COMMON_NAME_MISMATCH,
            f"CommonName 不匹配: {csr.common_name} != {req.username}",
        )

    if NODE_GROUP not in csr.organizations:
        raise CSRRejectedError(
            RejectionReason.MISSING_ORGANIZATION, f"Organization 不包含 {NODE_GROUP}"
        )

    return node_name


def _find_target_machine(machines: MachineList, node_name: str) -> Machine | None:
    # 重复的 node_ref 不做去重，取第一个
    for machine in machines.items:
        if machine.node_ref is not None and machine.node_ref == node_name:
            return machine
    return None


def _match_san(value: str, machine: Machine, address_types: frozenset) -> Tuple[bool, List[str]]:
    """在指定类型的机器地址中查找 value，返回 (是否找到, 参与比较的地址)。"""
    attempted: List[str] = []
    for addr in machine.addresses:
        if addr.type not in address_types:
            continue
        if addr.address == value:
            return True, attempted
        attempted.append(addr.address)
    return False, attempted


def _canonical_ip(ip) -> str:
    """IPv4 映射的 IPv6 地址（::ffff:a.b.c.d）按 IPv4 形式比较。"""
    mapped = getattr(ip, "ipv4_mapped", None)
    return str(mapped) if mapped is not None else str(ip)


def authorize_csr(
    machines: MachineList | None,
    req: CertificateSigningRequest | None,
    csr: ParsedCertificateRequest | None,
) -> None:
    """
    校验请求身份对应一台真实的机器，且每个 SAN 都是该机器已知的地址。
    :raises CSRRejectedError: 校验失败。
    """
    if machines is None or len(machines.items) < 1 or req is None or csr is None:
        raise CSRRejectedError(RejectionReason.INVALID_REQUEST, "无效的请求")

    node_name = validate_csr_contents(req, csr)

    target = _find_target_machine(machines, node_name)
    if target is None:
        raise CSRRejectedError(
            RejectionReason.NO_TARGET_MACHINE, f"没有找到节点 {node_name} 对应的机器"
        )

    for san in csr.dns_names:
        if len(san) < 1:
            continue
        found, attempted = _match_san(san, target, DNS_ADDRESS_TYPES)
        if not found:
            raise CSRRejectedError(
                RejectionReason.DNS_NAME_MISMATCH,
                f"DNS 名称 '{san}' 不在机器名称中: {' '.join(attempted)}",
                attempted,
            )

    for ip in csr.ip_addresses:
        san = _canonical_ip(ip)
        if len(san) < 1:
            continue
        found, attempted = _match_san(san, target, IP_ADDRESS_TYPES)
        if not found:
            raise CSRRejectedError(
                RejectionReason.IP_ADDRESS_MISMATCH,
                f"IP 地址 '{san}' 不在机器地址中: {' '.join(attempted)}",
                attempted,
            )
