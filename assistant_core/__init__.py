"""Assistant Core 顶层包。

该包提供命令行助手的 Provider 网关与会话上下文管理，
包括配置加载、领域模型、Provider 适配与注册表、重试、
流式解码、会话持久化与上下文裁剪等能力。
"""

from assistant_core.agents.chat_engine import ChatEngine
from assistant_core.providers import ProviderRegistry, create_registry

__all__ = ["ChatEngine", "ProviderRegistry", "create_registry"]
