"""对话引擎核心模块。

实现会话选择、上下文裁剪、调用 provider、流式转发与会话落盘：

1. 会话名由调用方显式传入，缺省时取一次活动会话指针（只读一次，之后作为值传递）。
2. 读取历史，用 context.build_messages_with_truncation 生成本次消息列表。
3. 通过注册表找到适配器并调用；非流式与流式都在结束后追加 user + assistant 两条记录。
4. 批量摘要：每段一个并发请求，全部完成后再做一次综合。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional
from uuid import uuid4

from assistant_core.agents.context import build_messages_with_truncation, chunk_text_for_token_limit
from assistant_core.config.settings import settings
from assistant_core.domain.conversation import ConversationStore
from assistant_core.domain.exceptions import ValidationError
from assistant_core.domain.models import ChatMessage, LlmRequest, LlmResponse, SessionRecord, now_ms
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.providers import ProviderRegistry
from assistant_core.providers.registry import get_provider_config


@dataclass
class ChatTarget:
    """一次调用解析出的 provider / model / endpoint。"""

    provider: str
    model: str
    endpoint: Optional[str] = None


@dataclass
class SummaryResult:
    model: str
    chunks: int
    summary: str


class ChatEngine:
    def __init__(self, registry: ProviderRegistry, store: ConversationStore, cfg=settings):
        self._registry = registry
        self._store = store
        self._settings = cfg

    def resolve_target(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> ChatTarget:
        """provider/model 缺省时取配置默认值；endpoint 为空时由凭证解析器按 provider 决定。"""

        name = (provider or self._settings.default_provider).lower()
        get_provider_config(name, self._settings)
        return ChatTarget(provider=name, model=model or self._settings.default_model, endpoint=endpoint)

    def build_request(
        self,
        target: ChatTarget,
        prompt: str,
        session: Optional[str],
        stream: bool,
    ) -> LlmRequest:
        if session:
            history = self._store.load_history(session)
            messages = build_messages_with_truncation(
                history,
                prompt,
                self._settings.context_token_budget,
                self._settings.chars_per_token,
            )
        else:
            messages = [ChatMessage(role="user", content=prompt)]
        return LlmRequest(
            model=target.model,
            messages=messages,
            stream=stream,
            endpoint_override=target.endpoint,
        )

    # ---- 非流式 ----

    async def ask(
        self,
        prompt: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        session: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> LlmResponse:
        prompt = self._check_prompt(prompt)
        target = self.resolve_target(provider, model, endpoint)
        trace_id = f"tr-{uuid4().hex}"
        start_time = time.time()
        req = self.build_request(target, prompt, session, stream=False)
        self._log(logging.INFO, "Sending request", trace_id, target, session=session, message_count=len(req.messages))

        adapter = self._registry.get(target.provider)
        res = await adapter.send(req)

        if session:
            self._append_turn(session, prompt, res.content, target.model, res)
        self._log(
            logging.INFO,
            "Completed request",
            trace_id,
            target,
            session=session,
            elapsed_seconds=round(time.time() - start_time, 2),
            **(res.usage.to_dict() if res.usage else {}),
        )
        return res

    # ---- 流式 ----

    async def ask_stream(
        self,
        prompt: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        session: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """建立流式连接后返回片段迭代器；连接失败在这里直接抛出。

        迭代完成后才把 user + assistant 记录追加到会话；中途放弃则什么也不写。
        """

        prompt = self._check_prompt(prompt)
        target = self.resolve_target(provider, model, endpoint)
        trace_id = f"tr-{uuid4().hex}"
        req = self.build_request(target, prompt, session, stream=True)
        self._log(logging.INFO, "Opening stream", trace_id, target, session=session, message_count=len(req.messages))

        adapter = self._registry.get(target.provider)
        fragments = await adapter.send_stream(req)
        return self._forward(fragments, prompt, session, target, trace_id)

    async def _forward(
        self,
        fragments: AsyncIterator[str],
        prompt: str,
        session: Optional[str],
        target: ChatTarget,
        trace_id: str,
    ) -> AsyncIterator[str]:
        pieces: List[str] = []
        try:
            async for piece in fragments:
                pieces.append(piece)
                yield piece
        finally:
            # 外层被提前关闭时同时关闭底层流，释放连接
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()
        content = "".join(pieces)
        if session:
            self._append_turn(session, prompt, content, target.model, None)
        self._log(logging.INFO, "Stream finished", trace_id, target, session=session, fragments=len(pieces))

    # ---- 会话内对话 ----

    async def chat_turn(
        self,
        session: str,
        prompt: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> LlmResponse:
        """交互式对话的一轮：确保会话存在并设为活动会话，然后非流式提问。"""

        self._store.create_if_missing(session)
        self._store.set_active(session)
        return await self.ask(prompt, provider=provider, model=model, session=session)

    # ---- 批量摘要 ----

    async def summarize(
        self,
        text: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens_per_chunk: Optional[int] = None,
    ) -> SummaryResult:
        """分段并发摘要，再综合为一段。任一段失败则整体失败。"""

        target = self.resolve_target(provider, model)
        limit = max_tokens_per_chunk or self._settings.summarize_chunk_tokens
        chunks = chunk_text_for_token_limit(text, limit, self._settings.chars_per_token)
        if not chunks:
            return SummaryResult(model=target.model, chunks=0, summary="")

        adapter = self._registry.get(target.provider)
        total = len(chunks)

        async def _one(index: int, chunk: str) -> str:
            prompt = (
                f"Summarize the following content (part {index + 1}/{total}). "
                f"Focus on key points and be concise.\n\n{chunk}"
            )
            req = LlmRequest(model=target.model, messages=[ChatMessage(role="user", content=prompt)])
            res = await adapter.send(req)
            return res.content

        tasks = [asyncio.ensure_future(_one(i, c)) for i, c in chunks]
        try:
            partials = await asyncio.gather(*tasks)
        except BaseException:
            # 一段失败就取消其余仍在进行的请求
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        if total == 1:
            summary = partials[0]
        else:
            synthesis = "Synthesize a concise overall summary from these parts:\n- " + "\n- ".join(partials)
            req = LlmRequest(model=target.model, messages=[ChatMessage(role="user", content=synthesis)])
            summary = (await adapter.send(req)).content
        log_event(logging.INFO, "Summarized text", provider=target.provider, model=target.model, chunks=total)
        return SummaryResult(model=target.model, chunks=total, summary=summary)

    # ---- 辅助方法 ----

    def _append_turn(
        self,
        session: str,
        prompt: str,
        answer: str,
        model: str,
        res: Optional[LlmResponse],
    ) -> None:
        user = SessionRecord(timestamp_ms=now_ms(), role="user", content=prompt)
        self._store.append(session, user)
        assistant = SessionRecord(
            timestamp_ms=now_ms(),
            role="assistant",
            content=answer,
            model=model,
            usage=res.usage if res else None,
        )
        self._store.append(session, assistant)

    @staticmethod
    def _check_prompt(prompt: str) -> str:
        if not prompt or not prompt.strip():
            raise ValidationError(code="MISSING_INPUT", message="empty prompt")
        return prompt

    @staticmethod
    def _log(level: int, message: str, trace_id: str, target: ChatTarget, **fields) -> None:
        log_event(level, message, trace_id=trace_id, provider=target.provider, model=target.model, **fields)
