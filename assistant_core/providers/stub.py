"""占位适配器与离线 mock 适配器。"""

from typing import AsyncIterator, List, Optional

from assistant_core.domain.exceptions import NotImplementedProviderError
from assistant_core.domain.models import LlmRequest, LlmResponse


class NotImplementedAdapter:
    """已登记但未接入的 Provider：所有方法立即、确定地失败。"""

    def __init__(self, name: str):
        self.name = name

    async def send(self, req: LlmRequest) -> LlmResponse:
        raise NotImplementedProviderError(self.name)

    async def send_stream(self, req: LlmRequest) -> AsyncIterator[str]:
        raise NotImplementedProviderError(self.name)

    async def list_models(self, endpoint: Optional[str] = None) -> List[str]:
        raise NotImplementedProviderError(self.name)


class MockAdapter:
    """离线确定性回显，不访问网络。"""

    name = "mock"
    models = ["mock-small", "mock-medium", "mock-large"]

    @staticmethod
    def _answer(req: LlmRequest) -> str:
        prompt = ""
        for msg in reversed(req.messages):
            if msg.role == "user":
                prompt = msg.content
                break
        return f"[stub answer] {prompt}"

    async def send(self, req: LlmRequest) -> LlmResponse:
        return LlmResponse(content=self._answer(req), usage=None)

    async def send_stream(self, req: LlmRequest) -> AsyncIterator[str]:
        words = self._answer(req).split(" ")

        async def _gen() -> AsyncIterator[str]:
            for i, word in enumerate(words):
                yield word if i == 0 else " " + word

        return _gen()

    async def list_models(self, endpoint: Optional[str] = None) -> List[str]:
        return list(self.models)
