"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
优先级：初始化参数 > 环境变量 > .env > config.yaml > secrets。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("GATEWAY_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
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


class GatewaySettings(BaseSettings):
    """网关配置（使用 Pydantic）。"""

    # ---- 后端选择 ----
    default_backend: str = Field(default="mock", description="请求未指定 backend 时使用的后端")

    # Docker Model Runner（OpenAI 兼容接口）
    docker_base_url: str = Field(
        default="http://localhost:12434/v1",
        description="本地模型运行时 API 基础URL",
    )
    docker_api_key: Optional[str] = Field(default=None, description="透传给本地运行时的 Bearer token")

    # CLI 路径
    claude_bin: Optional[str] = Field(default=None, description="claude CLI 路径，为空时自动探测")
    claude_use_subscription: bool = Field(
        default=True,
        description="启动 claude 时清空 ANTHROPIC_API_KEY，强制使用订阅鉴权",
    )
    gemini_bin: str = Field(default="gemini", description="gemini CLI 路径")
    codex_bin: str = Field(default="codex", description="codex CLI 路径")

    # ---- 超时（秒） ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 连接/读取超时时间（秒）")
    mock_timeout: float = Field(default=30.0, gt=0, description="mock 单片段超时")
    claude_timeout: float = Field(default=300.0, gt=0, description="claude 单片段超时")
    gemini_timeout: float = Field(default=120.0, gt=0, description="gemini 单片段超时")
    docker_timeout: float = Field(default=120.0, gt=0, description="docker 单片段超时")
    codex_timeout: float = Field(default=600.0, gt=0, description="codex 整体调用超时")

    # ---- 上下文 ----
    max_context_messages: int = Field(default=50, ge=1, le=500, description="无状态后端最大上下文消息数")
    context_token_budget: int = Field(
        default=32000,
        ge=1,
        description="无状态后端上下文估算 token 上限（含为回复预留的 max_tokens）",
    )

    # ---- 流式 ----
    mock_stream_delay: float = Field(default=0.03, ge=0.0, description="mock 每个词之间的延迟（秒）")
    codex_chunk_size: int = Field(default=50, ge=1, description="codex 整段回复切片大小")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- HTTP 服务 ----
    host: str = Field(default="127.0.0.1", description="监听地址")
    port: int = Field(default=3001, ge=1, le=65535, description="监听端口")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("default_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in {"mock", "claude", "gemini", "docker", "codex"}:
            raise ValueError(f"Unknown backend: {v!r}")
        return v

    @field_validator("docker_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

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
            cls._config_source,
            file_secret_settings,
        )


settings = GatewaySettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = GatewaySettings
