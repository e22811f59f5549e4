"""统一的对话与结果数据模型。

本模块定义了网关内部在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant）。
- LlmRequest: 发给底层 Provider 的完整请求，构造后不再修改。
- LlmResponse: 非流式调用解析后的统一响应结果。
- SessionRecord: 会话文件中的一行，对应一轮 user 或 assistant 发言。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple


# 与 OpenAI 兼容接口的 role 字段对应
Role = Literal["system", "user", "assistant"]
ROLES = ("system", "user", "assistant")


def now_ms() -> int:
    """当前时间的毫秒时间戳。"""

    return int(time.time() * 1000)


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。"""

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"invalid role: {self.role!r}")

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class LlmRequest:
    """一次完整的聊天请求。

    - model: 厂商模型 ID，如 "gpt-4o-mini"。
    - messages: 经过上下文裁剪后的有序消息列表。
    - stream: 是否走流式接口。
    - endpoint_override: 可选的替代 base URL（如本地推理服务）。
    """

    model: str
    messages: Tuple[ChatMessage, ...]
    stream: bool = False
    endpoint_override: Optional[str] = None

    def __post_init__(self) -> None:
        # 允许传入 list，统一冻结为 tuple
        object.__setattr__(self, "messages", tuple(self.messages))

    def to_payload(self, stream: Optional[bool] = None) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [m.to_payload() for m in self.messages],
            "stream": self.stream if stream is None else stream,
        }


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息，各字段都可能缺失。"""

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ChatUsage"]:
        if not isinstance(data, dict):
            return None
        return cls(
            prompt_tokens=data.get("prompt_tokens"),
            completion_tokens=data.get("completion_tokens"),
            total_tokens=data.get("total_tokens"),
        )

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class LlmResponse:
    """一次非流式调用的最终结果。"""

    content: str
    usage: Optional[ChatUsage] = None


@dataclass
class SessionRecord:
    """会话中的一轮发言，只追加、不修改。"""

    timestamp_ms: int
    role: str
    content: str
    model: Optional[str] = None
    usage: Optional[ChatUsage] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_ms": self.timestamp_ms,
            "role": self.role,
            "content": self.content,
            "model": self.model,
            "usage": self.usage.to_dict() if self.usage else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        ts = data["timestamp_ms"]
        if isinstance(ts, bool) or not isinstance(ts, int):
            raise ValueError("timestamp_ms must be an integer")
        role = data["role"]
        content = data["content"]
        if not isinstance(role, str) or not isinstance(content, str):
            raise ValueError("role and content must be strings")
        if role not in ROLES:
            raise ValueError(f"unsupported role: {role!r}")
        return cls(
            timestamp_ms=ts,
            role=role,
            content=content,
            model=data.get("model"),
            usage=ChatUsage.from_dict(data.get("usage")),
        )

    def to_message(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)  # type: ignore[arg-type]


@dataclass
class SessionMeta:
    """会话文件的摘要信息，用于列表展示。"""

    name: str
    path: Path
    num_lines: int
    file_size: int
    last_used_ms: Optional[int] = None


@dataclass(frozen=True)
class CredentialContext:
    """一次调用的有效 endpoint 与凭证，仅在调用期间存在。"""

    base_url: str
    credential: Optional[str]
    credential_required: bool


@dataclass
class ModelInfo:
    """模型目录中的一项。source 取值：config / remote / cache。"""

    name: str
    provider: str
    source: str
    streaming: bool = True
    context_window: Optional[int] = None
    supports_json: bool = False
    supports_tools: bool = False
    modalities: List[str] = field(default_factory=lambda: ["text"])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "provider": self.provider,
            "source": self.source,
            "streaming": self.streaming,
            "context_window": self.context_window,
            "supports_json": self.supports_json,
            "supports_tools": self.supports_tools,
            "modalities": list(self.modalities),
        }
