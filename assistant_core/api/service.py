"""对外 API 服务模块。

提供简化的函数接口供上层 CLI 调用，返回值都是可直接序列化为 JSON 的 dict。
活动会话指针在这里读取一次，再作为普通参数传给 ChatEngine。
"""

from typing import Any, Dict, List, Optional

from assistant_core.agents.catalog import ModelCatalog
from assistant_core.agents.chat_engine import ChatEngine
from assistant_core.config.settings import settings
from assistant_core.domain.conversation import ConversationStore
from assistant_core.domain.exceptions import StoreError, classify_error
from assistant_core.infrastructure.logging.logger import logger
from assistant_core.infrastructure.storage.jsonl_store import JsonlConversationStore
from assistant_core.infrastructure.storage.model_cache import ModelCache
from assistant_core.providers import create_registry


_store: Optional[ConversationStore] = None


def get_default_store() -> ConversationStore:
    """获取默认的会话存储实例（单例）。"""
    global _store
    if _store is None:
        _store = JsonlConversationStore(root=settings.sessions_root)
    return _store


async def run_ask(
    prompt: str,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    session: Optional[str] = None,
    store: Optional[ConversationStore] = None,
    registry=None,
) -> Dict[str, Any]:
    """单次提问（非流式）。

    Args:
        prompt: 用户输入内容
        provider: Provider 名称（可选，默认取配置）
        model: 模型 ID（可选，默认取配置）
        session: 会话名（可选，不提供则使用活动会话；都没有则不记录历史）

    Returns:
        包含 model、usage、answer、session 的字典
    """
    store = store or get_default_store()
    session_name = session or store.get_active()
    owns_registry = registry is None
    registry = registry or create_registry()
    try:
        engine = ChatEngine(registry, store)
        target = engine.resolve_target(provider, model)
        res = await engine.ask(prompt, provider=target.provider, model=target.model, session=session_name)
        return {
            "model": target.model,
            "usage": res.usage.to_dict() if res.usage else None,
            "answer": res.content,
            "session": session_name,
        }
    except Exception as e:
        code, hint = classify_error(e)
        logger.error(f"Ask failed: {e}", extra={"extra": {
            "session": session_name,
            "code": code,
            "hint": hint,
        }})
        raise
    finally:
        if owns_registry:
            await registry.aclose()


def new_session(name: str, store: Optional[ConversationStore] = None) -> Dict[str, Any]:
    """创建（若不存在）并激活会话。"""
    store = store or get_default_store()
    store.create_if_missing(name)
    store.set_active(name)
    return {"created": name, "active": name}


def switch_session(name: str, store: Optional[ConversationStore] = None) -> Dict[str, Any]:
    store = store or get_default_store()
    if not store.exists(name):
        raise StoreError(code="SESSION_NOT_FOUND", message=f"session not found: {name}")
    store.set_active(name)
    return {"active": name}


def show_session(store: Optional[ConversationStore] = None) -> Dict[str, Any]:
    """当前活动会话及其摘要；会话文件不存在时计数为 0。"""
    store = store or get_default_store()
    active = store.get_active()
    out: Dict[str, Any] = {"active": active, "lines": 0, "size": 0, "last_used_ms": None}
    if active:
        for m in store.list_metadata():
            if m.name == active:
                out.update(lines=m.num_lines, size=m.file_size, last_used_ms=m.last_used_ms)
                break
    return out


def list_sessions(store: Optional[ConversationStore] = None) -> List[Dict[str, Any]]:
    store = store or get_default_store()
    return [
        {"name": m.name, "lines": m.num_lines, "size": m.file_size, "last_used_ms": m.last_used_ms}
        for m in store.list_metadata()
    ]


def search_session(name: str, contains: str, store: Optional[ConversationStore] = None) -> List[Dict[str, Any]]:
    store = store or get_default_store()
    return [r.to_dict() for r in store.search(name, contains)]


async def list_models(
    provider: Optional[str] = None,
    registry=None,
    cache: Optional[ModelCache] = None,
) -> List[Dict[str, Any]]:
    owns_registry = registry is None
    registry = registry or create_registry()
    try:
        catalog = ModelCatalog(registry, cache=cache)
        return [m.to_dict() for m in await catalog.list_models(provider)]
    finally:
        if owns_registry:
            await registry.aclose()
