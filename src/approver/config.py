"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- Config(**overrides): 入参优先，由 run.py 按命令行参数构造
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_log_level: 规范化日志级别
- JsonFileSettingsSource: 读取 config.json 中与字段同名的键
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


def _config_file_path() -> Path:
    cfg_path = os.environ.get("CONFIG_FILE")
    return Path(cfg_path) if cfg_path else Path.cwd() / "config.json"


class JsonFileSettingsSource(PydanticBaseSettingsSource):
    """config.json 中与 Config 字段同名的键；文件缺失或格式错误时视为空。"""

    def __init__(self, settings_cls):
        super().__init__(settings_cls)
        path = _config_file_path()
        try:
            data = json.loads(path.read_text(encoding="utf-8")) if path.exists() else {}
        except (OSError, ValueError):
            data = {}
        fields = settings_cls.model_fields
        self._data: Dict[str, Any] = (
            {k: v for k, v in data.items() if k in fields} if isinstance(data, dict) else {}
        )

    def get_field_value(self, field, field_name):  # type: ignore[override]
        return self._data.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return dict(self._data)


class Config(BaseSettings):
    kubeconfig: str = ""
    master: str = ""
    machine_api_namespace: str = "openshift-machine-api"
    workers: int = Field(default=1, ge=1)
    max_retries: int = Field(default=5, ge=0)
    base_retry_delay: float = Field(default=0.005, gt=0)
    max_retry_delay: float = Field(default=1000.0, gt=0)
    cache_sync_timeout: float = Field(default=60.0, gt=0)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="APPROVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def parse_log_level(cls, value: Any) -> str:
        """日志级别统一转为大写，空值回退为 INFO。"""
        if value is None or str(value).strip() == "":
            return "INFO"
        return str(value).strip().upper()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )
