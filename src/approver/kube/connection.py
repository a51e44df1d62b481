"""
集群 API 连接：加载 kubeconfig（或集群内配置）并验证 API Server 可达。
"""

from __future__ import annotations

from kubernetes import client, config
from kubernetes.client import ApiClient, ApiException, Configuration
from kubernetes.config.config_exception import ConfigException
from loguru import logger
from urllib3.exceptions import HTTPError

from src.approver.errors import KubeConnectionError


def _load_configuration(kubeconfig: str, master: str) -> Configuration:
    client_config = type.__call__(Configuration)
    if not kubeconfig and not master:
        try:
            config.load_incluster_config(client_configuration=client_config)
            return client_config
        except ConfigException as e:
            logger.warning(f"未能加载集群内配置，尝试默认 kubeconfig: {e}")

    try:
        config.load_kube_config(
            config_file=kubeconfig or None,
            client_configuration=client_config,
            persist_config=False,
        )
    except (ConfigException, OSError) as e:
        if not master:
            raise KubeConnectionError(f"加载 kubeconfig 失败: {e}") from e
        logger.warning(f"加载 kubeconfig 失败，仅使用 master 地址: {e}")

    if master:
        client_config.host = master
    return client_config


def build_api_client(kubeconfig: str = "", master: str = "") -> ApiClient:
    """
    构建集群 API 客户端。
    :param kubeconfig: kubeconfig 文件路径，为空时优先使用集群内配置。
    :param master: 覆盖 API Server 地址。
    :raises KubeConnectionError: 无法加载配置或 API Server 不可达。
    """
    api_client = ApiClient(configuration=_load_configuration(kubeconfig, master))
    try:
        version = client.VersionApi(api_client).get_code()
    except (ApiException, HTTPError) as e:
        raise KubeConnectionError(
            f"无法连接 API Server {api_client.configuration.host}: {e}"
        ) from e
    logger.info(f"已连接 API Server {api_client.configuration.host}，版本 {version.git_version}")
    return api_client
