"""
基础设施错误类型。均为 RuntimeError，表示可重试（或启动期致命）的外部故障，
与 csr.core 中的 ValueError 类拒绝明确区分。
"""


class KubeConnectionError(RuntimeError):
    """无法建立与集群 API 的连接（启动期致命）。"""


class MachineAPIUnavailableError(RuntimeError):
    """机器清单服务不可用。"""


class ApprovalUpdateError(RuntimeError):
    """持久化审批结果失败。"""


class StoreError(RuntimeError):
    """本地缓存读取失败。"""
