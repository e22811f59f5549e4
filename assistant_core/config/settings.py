"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置，优先级：
init 参数 > 环境变量 > .env > config.yaml。

注意：各 Provider 的 API Key 不放在这里，凭证由
providers.credentials 在每次调用时直接从环境变量读取。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_DIR_NAME = "sw-assistant"

# .env 中的密钥需要进入 os.environ，凭证解析器才能读到；不覆盖已有变量
load_dotenv(override=False)


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）：先看 AGENT_CONFIG_FILE，再看当前目录。"""
    candidates = []
    explicit = os.getenv("AGENT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.append(Path.cwd() / "config.yaml")

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


def _default_data_dir() -> str:
    base = os.getenv("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return str(Path(base) / APP_DIR_NAME)


def _default_cache_dir() -> str:
    base = os.getenv("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return str(Path(base) / APP_DIR_NAME)


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称，例如 openai、groq、lmstudio、mock",
    )
    default_model: str = Field(default="gpt-4o-mini", description="默认模型 ID")

    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API 基础URL",
    )
    groq_base_url: str = Field(
        default="https://api.groq.com/openai/v1",
        description="Groq（OpenAI 兼容）API 基础URL",
    )
    lmstudio_api_base: str = Field(
        default="http://127.0.0.1:1234/v1",
        description="本地推理服务（LM Studio）基础URL",
    )

    # ---- 网络与重试 ----
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒，连接+响应）")
    max_retries: int = Field(default=3, ge=0, le=10, description="失败后的最大重试次数")
    retry_base_delay: float = Field(default=0.1, ge=0.0, description="退避基数（秒），实际为 2^n * base")
    retry_max_jitter: float = Field(default=0.1, ge=0.0, description="随机抖动上限（秒）")

    # ---- 上下文 ----
    context_token_budget: int = Field(default=4000, ge=0, description="单次请求的估算 token 预算")
    chars_per_token: int = Field(default=4, ge=1, description="token 估算时每个 token 对应的字符数")
    summarize_chunk_tokens: int = Field(default=600, ge=1, description="批量摘要时每段的 token 上限")

    # ---- 存储与日志 ----
    data_dir: str = Field(default_factory=_default_data_dir, description="会话数据目录")
    cache_dir: str = Field(default_factory=_default_cache_dir, description="模型列表缓存目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # 模型能力覆盖，键为 "provider:model" 或 "model"
    model_overrides: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = (v or "INFO").upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log level: {v!r}")
        return level

    @field_validator("openai_base_url", "groq_base_url", "lmstudio_api_base")
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

    @property
    def sessions_root(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def models_cache_path(self) -> Path:
        return Path(self.cache_dir).expanduser() / "models.json"

    def find_model_override(self, provider: str, model: str) -> Optional[Dict[str, Any]]:
        """按 "provider:model" 优先、再按 "model" 查找能力覆盖配置。"""

        full_key = f"{provider.lower()}:{model}"
        if full_key in self.model_overrides:
            return self.model_overrides[full_key]
        return self.model_overrides.get(model)


settings = Settings()
