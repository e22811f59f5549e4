"""Provider 静态配置表。

每个已知 Provider 在这里登记：默认 base URL、凭证环境变量，
以及由哪类适配器承载：

- "openai": OpenAI 兼容的 chat/completions 接口（openai、groq、lmstudio）。
- "stub": 尚未接入的厂商，调用立即失败。
- "mock": 离线确定性回显，用于测试与演示。

base URL 在每次调用时计算（环境变量可能在两次调用之间变化）。
"""

import os
from dataclasses import dataclass
from typing import Dict, Literal, Mapping, Optional

from assistant_core.config.settings import settings
from assistant_core.domain.exceptions import UnsupportedProviderError


AdapterKind = Literal["openai", "stub", "mock"]

# 本地推理服务（loopback）使用的可选凭证
LOCAL_API_KEY_ENV = "LMSTUDIO_API_KEY"
DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    api_key_env: str
    kind: AdapterKind


# 名称 -> (kind, 凭证环境变量)，顺序即 registry 的展示顺序
PROVIDER_TABLE: Mapping[str, tuple] = {
    "openai": ("openai", "OPENAI_API_KEY"),
    "groq": ("openai", "GROQ_API_KEY"),
    "lmstudio": ("openai", LOCAL_API_KEY_ENV),
    "anthropic": ("stub", "ANTHROPIC_API_KEY"),
    "grok": ("stub", "XAI_API_KEY"),
    "xai": ("stub", "XAI_API_KEY"),
    "gemini": ("stub", "GOOGLE_API_KEY"),
    "ollama": ("stub", ""),
    "mock": ("mock", ""),
}

STATIC_BASE_URLS: Mapping[str, str] = {
    "anthropic": "https://api.anthropic.com/v1",
    "grok": "https://api.x.ai/v1",
    "xai": "https://api.x.ai/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "ollama": "http://127.0.0.1:11434",
    "mock": "mock://local",
}


def _base_url_for(name: str, cfg, environ: Mapping[str, str]) -> str:
    if name == "openai":
        return cfg.openai_base_url
    if name == "groq":
        return cfg.groq_base_url
    if name == "lmstudio":
        return (environ.get("LMSTUDIO_API_BASE") or cfg.lmstudio_api_base).rstrip("/")
    return STATIC_BASE_URLS[name]


def get_provider_config(
    name: str,
    cfg=settings,
    environ: Optional[Mapping[str, str]] = None,
) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = (name or "").strip().lower()
    if key not in PROVIDER_TABLE:
        raise UnsupportedProviderError(name)
    env = os.environ if environ is None else environ
    kind, api_key_env = PROVIDER_TABLE[key]
    return ProviderConfig(
        name=key,
        base_url=_base_url_for(key, cfg, env),
        api_key_env=api_key_env,
        kind=kind,
    )


def provider_configs(cfg=settings, environ: Optional[Mapping[str, str]] = None) -> Dict[str, ProviderConfig]:
    return {name: get_provider_config(name, cfg, environ) for name in PROVIDER_TABLE}
