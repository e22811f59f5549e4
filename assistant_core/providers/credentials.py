"""凭证与 endpoint 解析。

规则（按顺序）：
1. 有效 base URL 的 host 是 loopback（localhost / 127.x / ::1）时，凭证可选，
   从 LMSTUDIO_API_KEY 读取。
2. 否则按 host 匹配已知云厂商的环境变量，匹配不到就用 Provider 自己的变量。
3. 必需但缺失时抛 MissingCredentialError。

每次调用都重新读取环境变量，不做缓存。
"""

import ipaddress
import os
from typing import Mapping, Optional

import httpx

from assistant_core.config.settings import settings
from assistant_core.domain.exceptions import MissingCredentialError, ValidationError
from assistant_core.domain.models import CredentialContext
from assistant_core.providers.registry import (
    DEFAULT_API_KEY_ENV,
    LOCAL_API_KEY_ENV,
    get_provider_config,
)


KNOWN_CLOUD_HOSTS: Mapping[str, str] = {
    "api.groq.com": "GROQ_API_KEY",
    "api.openai.com": "OPENAI_API_KEY",
}


def is_loopback_host(host: str) -> bool:
    host = (host or "").strip("[]").lower()
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _host_of(base_url: str) -> str:
    try:
        return httpx.URL(base_url).host
    except httpx.InvalidURL as e:
        raise ValidationError(code="INVALID_ENDPOINT", message=f"invalid endpoint {base_url!r}: {e}") from e


def resolve_credentials(
    provider: str,
    endpoint: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    cfg=settings,
) -> CredentialContext:
    env = os.environ if environ is None else environ
    provider_cfg = get_provider_config(provider, cfg, env)
    base_url = (endpoint or provider_cfg.base_url).rstrip("/")
    host = _host_of(base_url)

    if is_loopback_host(host):
        key = (env.get(LOCAL_API_KEY_ENV) or "").strip() or None
        return CredentialContext(base_url=base_url, credential=key, credential_required=False)

    env_var = KNOWN_CLOUD_HOSTS.get(host) or provider_cfg.api_key_env or DEFAULT_API_KEY_ENV
    key = (env.get(env_var) or "").strip() or None
    if key is None:
        raise MissingCredentialError(env_var=env_var, base_url=base_url)
    return CredentialContext(base_url=base_url, credential=key, credential_required=True)


def auth_headers(ctx: CredentialContext) -> dict:
    headers = {"Content-Type": "application/json"}
    if ctx.credential:
        headers["Authorization"] = f"Bearer {ctx.credential}"
    return headers
