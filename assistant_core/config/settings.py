"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级从高到低：
初始化参数 > 环境变量 > .env > config.yaml > secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_FALLBACK_MESSAGE = (
    "Sorry, I couldn't put together a response just now. Please try again in a moment."
)
DEFAULT_BLOCKED_MESSAGE = (
    "Sorry, I can't help with that request. Could you try rephrasing it?"
)
DEFAULT_BUSY_MESSAGE = "The assistant is a bit busy right now. Please wait a moment and try again."


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("ASSISTANT_CONFIG_FILE")
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


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 密钥：只有配置了密钥的 Provider 才会进入候选链 ----
    gateway_api_key: Optional[str] = Field(default=None, description="AI 网关 API 密钥")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    gemini_api_key: Optional[str] = Field(default=None, description="Google Gemini API 密钥")
    deepseek_api_key: Optional[str] = Field(default=None, description="DeepSeek API 密钥")

    # ---- Provider 基础 URL（留空则使用 registry 中的默认值）----
    gateway_base_url: Optional[str] = Field(default=None, description="AI 网关基础URL")
    openai_base_url: Optional[str] = Field(default=None, description="OpenAI 基础URL")
    gemini_base_url: Optional[str] = Field(default=None, description="Gemini 基础URL")
    deepseek_base_url: Optional[str] = Field(default=None, description="DeepSeek 基础URL")

    preferred_provider: Optional[str] = Field(
        default=None,
        description="优先使用的 Provider 名称，可用时排到所有候选链的最前面",
    )

    # ---- 调度与重试 ----
    http_timeout: float = Field(default=75.0, ge=1.0, le=600.0, description="单次 HTTP 尝试的硬超时（秒）")
    max_retries: int = Field(default=3, ge=1, le=10, description="同一 Provider 的最大尝试次数")
    retry_base_delay: float = Field(default=1.0, ge=0.0, description="退避基础时长（秒）")

    # ---- 请求构造 ----
    max_image_bytes: int = Field(
        default=20 * 1024 * 1024,
        ge=1,
        description="单次请求内联图片的总字节上限（解码后）",
    )
    max_context_messages: int = Field(default=20, ge=1, le=100, description="最大上下文消息数")
    document_context_chars: int = Field(default=8000, ge=1, description="文档上下文注入的最大字符数")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 面向用户的兜底文案 ----
    fallback_message: str = Field(default=DEFAULT_FALLBACK_MESSAGE, description="上游无内容时的致歉文案")
    blocked_message: str = Field(default=DEFAULT_BLOCKED_MESSAGE, description="内容安全拦截时的替代文案")
    busy_message: str = Field(default=DEFAULT_BUSY_MESSAGE, description="所有 Provider 均失败时的提示")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("gateway_api_key", "openai_api_key", "gemini_api_key", "deepseek_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("preferred_provider")
    @classmethod
    def normalize_provider_name(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        return v.strip().lower() or None

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


settings = Settings()
