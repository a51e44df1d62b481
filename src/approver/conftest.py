"""
测试共用的 fixture：生成真实的节点 CSR 与对应的请求对象。
"""

import ipaddress
from typing import Sequence

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from src.approver.csr.schemas import (
    CertificateSigningRequest,
    Machine,
    MachineAddress,
    MachineList,
)


def build_csr_pem(
    common_name: str,
    organizations: Sequence[str] = ("system:nodes",),
    dns_names: Sequence[str] = (),
    ip_addresses: Sequence[str] = (),
) -> bytes:
    """生成 EC 私钥并签出 PEM 格式的 CSR。"""
    private_key = ec.generate_private_key(ec.SECP256R1())
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    attrs += [x509.NameAttribute(NameOID.ORGANIZATION_NAME, o) for o in organizations]
    builder = x509.CertificateSigningRequestBuilder().subject_name(x509.Name(attrs))
    sans = [x509.DNSName(d) for d in dns_names]
    sans += [x509.IPAddress(ipaddress.ip_address(i)) for i in ip_addresses]
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


@pytest.fixture
def csr_pem():
    return build_csr_pem


@pytest.fixture
def node_csr():
    """worker-7 的合法请求（request 需由调用方填入）。"""

    def _make(request: bytes = b"", **overrides) -> CertificateSigningRequest:
        fields = {
            "name": "csr-worker-7",
            "username": "system:node:worker-7",
            "groups": ["system:nodes", "system:authenticated"],
            "usages": ["digital signature", "key encipherment", "server auth"],
            "signer_name": "kubernetes.io/kubelet-serving",
            "request": request,
        }
        fields.update(overrides)
        return CertificateSigningRequest(**fields)

    return _make


@pytest.fixture
def worker_machines() -> MachineList:
    return MachineList(
        items=(
            Machine(
                name="machine-worker-7",
                node_ref="worker-7",
                addresses=(
                    MachineAddress(type="InternalDNS", address="worker-7.cluster.local"),
                    MachineAddress(type="Hostname", address="worker-7"),
                    MachineAddress(type="InternalIP", address="10.0.0.7"),
                    MachineAddress(type="ExternalIP", address="203.0.113.7"),
                ),
            ),
            Machine(name="machine-unbound", node_ref=None, addresses=()),
        )
    )
