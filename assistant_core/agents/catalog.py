"""模型目录：合并配置中的模型、远端列表与本地缓存。

- config: 当前默认模型，能力按名称推断。
- remote: 适配器 GET /models 的结果，OpenAI 会额外尝试按模型补充能力字段。
- cache: 远端失败时回退到 24 小时内的缓存。

能力补充只是尽力而为，失败时保留推断出的默认值。
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from assistant_core.config.settings import settings
from assistant_core.domain.exceptions import BusinessError
from assistant_core.domain.models import ModelInfo
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.infrastructure.storage.model_cache import ModelCache
from assistant_core.providers import ProviderRegistry


def infer_capabilities(provider: str, model: str) -> Tuple[bool, bool, List[str]]:
    """按 provider 与模型名粗略推断 (supports_json, supports_tools, modalities)。"""

    provider = provider.lower()
    if provider == "mock":
        return True, False, ["text"]
    if provider == "openai":
        name = model.lower()
        is_vision = "gpt-4o" in name or "gpt-4.1" in name
        supports_tools = is_vision or "o-mini" in name
        supports_json = is_vision or "mini" in name
        modalities = ["text", "vision"] if is_vision else ["text"]
        return supports_json, supports_tools, modalities
    return False, False, ["text"]


def apply_override(info: ModelInfo, override: Optional[Dict[str, Any]]) -> ModelInfo:
    if not override:
        return info
    if override.get("streaming") is not None:
        info.streaming = bool(override["streaming"])
    if override.get("context_window") is not None:
        info.context_window = int(override["context_window"])
    if override.get("supports_json") is not None:
        info.supports_json = bool(override["supports_json"])
    if override.get("supports_tools") is not None:
        info.supports_tools = bool(override["supports_tools"])
    if override.get("modalities") is not None:
        info.modalities = [str(m) for m in override["modalities"]]
    return info


def _caps_from_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """从 /models/{id} 的返回中读取能力字段，兼容嵌套 capabilities 与顶层字段。"""

    caps = details.get("capabilities")
    source = caps if isinstance(caps, dict) else details
    found: Dict[str, Any] = {}
    for key in ("streaming", "supports_json", "supports_tools", "modalities"):
        if key in source:
            found[key] = source[key]
    cw = source.get("context_window") or details.get("context_length")
    if isinstance(cw, int):
        found["context_window"] = cw
    return found


class ModelCatalog:
    def __init__(self, registry: ProviderRegistry, cache: Optional[ModelCache] = None, cfg=settings):
        self._registry = registry
        self._cache = cache or ModelCache()
        self._settings = cfg

    def _make_info(self, provider: str, name: str, source: str) -> ModelInfo:
        supports_json, supports_tools, modalities = infer_capabilities(provider, name)
        info = ModelInfo(
            name=name,
            provider=provider,
            source=source,
            streaming=True,
            context_window=128000 if "gpt-4o" in name else None,
            supports_json=supports_json,
            supports_tools=supports_tools,
            modalities=modalities,
        )
        return apply_override(info, self._settings.find_model_override(provider, name))

    async def list_models(self, provider: Optional[str] = None, model: Optional[str] = None) -> List[ModelInfo]:
        provider = (provider or self._settings.default_provider).lower()
        default_model = model or self._settings.default_model
        configured: List[ModelInfo] = []
        if default_model:
            configured.append(self._make_info(provider, default_model, "config"))

        adapter = self._registry.get(provider)
        fetched: List[ModelInfo] = []
        try:
            names = await adapter.list_models()
        except BusinessError as e:
            log_event(logging.WARNING, "Remote model listing failed, using cache", provider=provider, error=str(e))
            fetched = [
                apply_override(m, self._settings.find_model_override(provider, m.name))
                for m in self._cache.read(provider, allow_stale=provider == "mock")
            ]
        else:
            details = await self._enrich(provider, adapter, names)
            for name in names:
                info = self._make_info(provider, name, "remote")
                if name in details:
                    info = apply_override(info, details[name])
                    info = apply_override(info, self._settings.find_model_override(provider, name))
                fetched.append(info)
            self._cache.write(provider, fetched)

        seen = set()
        merged: List[ModelInfo] = []
        for m in configured + fetched:
            if m.name not in seen:
                seen.add(m.name)
                merged.append(m)
        return merged

    async def _enrich(self, provider: str, adapter, names: List[str]) -> Dict[str, Dict[str, Any]]:
        if provider != "openai" or not hasattr(adapter, "model_details"):
            return {}
        found: Dict[str, Dict[str, Any]] = {}
        for name in names:
            try:
                details = await adapter.model_details(name)
            except BusinessError:
                continue
            caps = _caps_from_details(details)
            if caps:
                found[name] = caps
        return found
