"""配置管理模块。

支持从初始化参数、环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("ASSISTANT_STREAM_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class YamlConfigSource(PydanticBaseSettingsSource):
    """把 config.yaml 作为一个配置来源接入 pydantic-settings。"""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        data = _load_config_from_yaml()
        known = self.settings_cls.model_fields
        return {k: v for k, v in data.items() if k in known}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 后端相关配置 ----
    backend_base_url: str = Field(
        default="http://localhost:3000",
        description="聊天后端的基础URL",
    )
    auth_token: Optional[str] = Field(default=None, description="Bearer 令牌，由认证模块提供")
    user_id: Optional[str] = Field(default=None, description="当前用户ID，随请求一并发送")
    default_agent_ref: Optional[str] = Field(
        default=None,
        description="新建会话时默认绑定的 AI 好友 / Agent",
    )

    # ---- 超时 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="普通 REST 请求超时时间（秒）")
    stream_read_timeout: float = Field(
        default=60.0,
        ge=1.0,
        description="流式响应两次数据块之间允许的最长等待（秒）",
    )
    stream_deadline: Optional[float] = Field(
        default=120.0,
        description="单次流式会话的总时长上限（秒），到期后取消；为空或 0 表示不限制",
    )

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("backend_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("backend_base_url must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("auth_token")
    @classmethod
    def validate_token(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) < 10:
            raise ValueError("auth token seems too short")
        return v

    @field_validator("stream_deadline")
    @classmethod
    def normalize_deadline(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            return None
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSource(settings_cls),
            file_secret_settings,
        )


settings = Settings()
