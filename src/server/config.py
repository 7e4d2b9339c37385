"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.clamp_default_days: 默认有效期限制在 1~365 天
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Tuple

from loguru import logger
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    port: int = 8080
    signer_token: SecretStr = SecretStr("")
    allow_private_ips: bool = True
    default_days: int = 7
    # 中间 CA 证书与私钥：PEM / 转义 PEM / Base64 / Base64URL / DER / 文件路径 均可
    dev_int_crt: str = ""
    dev_int_key: SecretStr = SecretStr("")
    ca_backend: Literal["cryptography", "openssl"] = "cryptography"
    rate_limit_per_minute: int = 5
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("default_days", mode="after")
    @classmethod
    def clamp_default_days(cls, value: int) -> int:
        return min(max(value, 1), 365)

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

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> Dict[str, Any]:
                if self._data is None:
                    cfg_path = os.environ.get("CONFIG_FILE")
                    path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                    self._data = {}
                    if path.exists():
                        try:
                            data = json.loads(path.read_text(encoding="utf-8"))
                            self._data = data if isinstance(data, dict) else {}
                        except (OSError, ValueError) as e:
                            logger.warning(f"读取配置文件失败，已忽略: {path}: {e}")
                return self._data

            def __call__(self) -> Dict[str, Any]:
                return dict(self._load())

            def get_field_value(self, field, field_name):  # type: ignore[override]
                data = self._load()
                key = getattr(field, "alias", None) or field_name
                for candidate in (key, field_name):
                    if candidate in data:
                        return data[candidate], candidate, True
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


config = Config()
