"""
节点 CSR 自动审批的安全策略常量。

这些值决定了哪些请求有资格被自动批准，修改前请先审计。
"""

NODE_USER = "system:node"
NODE_USER_PREFIX = NODE_USER + ":"
NODE_GROUP = "system:nodes"
AUTHENTICATED_GROUP = "system:authenticated"

USAGE_DIGITAL_SIGNATURE = "digital signature"
USAGE_KEY_ENCIPHERMENT = "key encipherment"
USAGE_SERVER_AUTH = "server auth"
REQUIRED_USAGES = frozenset(
    {USAGE_DIGITAL_SIGNATURE, USAGE_KEY_ENCIPHERMENT, USAGE_SERVER_AUTH}
)

# 机器地址类型（与 Kubernetes NodeAddressType 一致）
ADDRESS_INTERNAL_DNS = "InternalDNS"
ADDRESS_EXTERNAL_DNS = "ExternalDNS"
ADDRESS_HOSTNAME = "Hostname"
ADDRESS_INTERNAL_IP = "InternalIP"
ADDRESS_EXTERNAL_IP = "ExternalIP"
DNS_ADDRESS_TYPES = frozenset({ADDRESS_INTERNAL_DNS, ADDRESS_EXTERNAL_DNS, ADDRESS_HOSTNAME})
IP_ADDRESS_TYPES = frozenset({ADDRESS_INTERNAL_IP, ADDRESS_EXTERNAL_IP})

APPROVED_CONDITION = "Approved"
APPROVAL_REASON = "NodeCSRApprove"
APPROVAL_MESSAGE = "This CSR was approved by the Node CSR Approver"
DEGRADED_SUFFIX = " (no SAN validation)"
