"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 适配器协议 (base)。
- 维护 Provider 静态配置 (registry) 与凭证解析 (credentials)。
- 重试执行器 (retry) 与流式解码 (streaming)。
- 具体实现：OpenAI 兼容适配器 (openai_client)、占位与 mock 适配器 (stub)。

ProviderRegistry 每次命令调用构建一次，持有一个共享的 httpx.AsyncClient。
"""

from typing import Dict, List, Optional

import httpx

from assistant_core.config.settings import settings
from assistant_core.domain.exceptions import UnsupportedProviderError
from assistant_core.providers.base import ProviderAdapter
from assistant_core.providers.openai_client import OpenAiCompatibleAdapter
from assistant_core.providers.registry import PROVIDER_TABLE, provider_configs
from assistant_core.providers.stub import MockAdapter, NotImplementedAdapter


class ProviderRegistry:
    """名称 -> 适配器 的查找表，名称不区分大小写。"""

    def __init__(self, adapters: Dict[str, ProviderAdapter], http_client: Optional[httpx.AsyncClient] = None):
        self._adapters = {k.lower(): v for k, v in adapters.items()}
        self._http = http_client

    @classmethod
    def create(cls, cfg=settings, http_client: Optional[httpx.AsyncClient] = None) -> "ProviderRegistry":
        """按静态表构建全部适配器；未传入 http_client 时按 http_timeout 新建一个。"""

        client = http_client or httpx.AsyncClient(timeout=cfg.http_timeout, trust_env=False)
        adapters: Dict[str, ProviderAdapter] = {}
        for name, pcfg in provider_configs(cfg).items():
            if pcfg.kind == "openai":
                adapters[name] = OpenAiCompatibleAdapter(pcfg, client, cfg)
            elif pcfg.kind == "mock":
                adapters[name] = MockAdapter()
            else:
                adapters[name] = NotImplementedAdapter(name)
        return cls(adapters, client)

    def get(self, name: str) -> ProviderAdapter:
        adapter = self.find(name)
        if adapter is None:
            raise UnsupportedProviderError(name)
        return adapter

    def find(self, name: str) -> Optional[ProviderAdapter]:
        return self._adapters.get((name or "").strip().lower())

    def names(self) -> List[str]:
        return list(self._adapters)

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()

    async def __aenter__(self) -> "ProviderRegistry":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


def create_registry(cfg=settings, http_client: Optional[httpx.AsyncClient] = None) -> ProviderRegistry:
    return ProviderRegistry.create(cfg, http_client)


KNOWN_PROVIDERS = tuple(PROVIDER_TABLE)

__all__ = ["ProviderRegistry", "ProviderAdapter", "create_registry", "KNOWN_PROVIDERS"]
