"""Provider 适配器抽象接口。

上层 ChatEngine 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每个厂商实现一个适配器（如 OpenAiCompatibleAdapter）。
- 负责：将 LlmRequest 转成具体 API 请求，并把响应解析为 LlmResponse / 文本片段。
- 未接入的厂商用 NotImplementedAdapter 占位，保证注册表对所有已知名称接口一致。
"""

from typing import AsyncIterator, List, Optional, Protocol

from assistant_core.domain.models import LlmRequest, LlmResponse


class ProviderAdapter(Protocol):
    """Provider 适配器协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/错误信息。
    - send(req): 一次非流式调用，返回 LlmResponse。
    - send_stream(req): 建立流式连接，返回文本片段的异步迭代器。
    - list_models(endpoint): 列出可用模型 ID。
    """

    name: str

    async def send(self, req: LlmRequest) -> LlmResponse:
        ...

    async def send_stream(self, req: LlmRequest) -> AsyncIterator[str]:
        ...

    async def list_models(self, endpoint: Optional[str] = None) -> List[str]:
        ...
