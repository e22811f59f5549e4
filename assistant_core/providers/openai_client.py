"""OpenAI 兼容 Provider 适配器（openai / groq / lmstudio 共用）。

接口：
- URL: {base_url}/chat/completions，请求体 {model, messages, stream}
- URL: {base_url}/models，列出模型，也用于轻量的凭证校验
- 认证: Authorization: Bearer <api_key>（本地推理服务可省略）

本模块负责：

1. 接收统一的 LlmRequest，解析凭证与 endpoint。
2. 通过重试执行器发起 HTTP 调用，把 httpx 异常转换为业务异常。
3. 非流式：解析第一个 choice 的文本与 usage。
4. 流式：连接建立（含状态检查）走重试，之后把字节流交给 streaming 解码。
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import httpx

from assistant_core.config.settings import settings
from assistant_core.domain.exceptions import (
    DecodeError,
    NetworkError,
    ProviderError,
    RequestTimeoutError,
)
from assistant_core.domain.models import ChatUsage, CredentialContext, LlmRequest, LlmResponse
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.providers.credentials import auth_headers, resolve_credentials
from assistant_core.providers.registry import ProviderConfig, get_provider_config
from assistant_core.providers.retry import retry
from assistant_core.providers.streaming import decode_event_stream


def translate_http_error(exc: httpx.HTTPError, timeout: Optional[float] = None) -> Exception:
    """把 httpx 的异常映射为业务异常（超时单独区分）。"""

    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(str(exc), timeout=timeout)
    return NetworkError(code="NETWORK_ERROR", message=f"network error: {exc}")


# 被丢弃的流在事件循环上异步关闭，这里持有任务引用直到完成
_pending_closes: Set["asyncio.Task[None]"] = set()


class FragmentStream:
    """流式响应的文本片段迭代器，持有底层 httpx 响应。

    迭代结束、出错或调用 aclose() 时关闭响应；未迭代就被丢弃时，
    在当前事件循环上安排关闭，连接不会留在池里。
    """

    def __init__(self, resp: httpx.Response, translate: Callable[[httpx.HTTPError], Exception]):
        self._resp = resp
        self._translate = translate
        self._pieces = decode_event_stream(resp.aiter_bytes())
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "FragmentStream":
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._pieces.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        except httpx.HTTPError as e:
            await self.aclose()
            raise self._translate(e) from e
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pieces.aclose()
        finally:
            await self._resp.aclose()

    def __del__(self) -> None:
        if getattr(self, "_closed", True):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._resp.aclose())
        _pending_closes.add(task)
        task.add_done_callback(_pending_closes.discard)


class OpenAiCompatibleAdapter:
    """OpenAI 兼容协议的 Provider 客户端实现。

    - http_client: 由注册表创建并共享的 httpx.AsyncClient，超时在其上统一设置。
    - cfg: Settings，提供重试参数与超时时间（仅用于错误信息）。
    """

    def __init__(self, config: ProviderConfig, http_client: httpx.AsyncClient, cfg=settings):
        self.name = config.name
        self._config = config
        self._http = http_client
        self._settings = cfg

    # ---- 非流式 ----

    async def send(self, req: LlmRequest) -> LlmResponse:
        ctx = self._resolve(req.endpoint_override)
        url = f"{ctx.base_url}/chat/completions"
        payload = req.to_payload(stream=False)
        self._log_call("Calling provider", req, ctx)

        async def _post() -> httpx.Response:
            try:
                resp = await self._http.post(url, json=payload, headers=auth_headers(ctx))
            except httpx.HTTPError as e:
                raise self._translate(e) from e
            if not resp.is_success:
                raise ProviderError(resp.status_code, resp.text, provider=self.name)
            return resp

        resp = await self._retry(_post, "chat")
        data = self._json(resp)
        return self._parse_response(data)

    # ---- 流式 ----

    async def send_stream(self, req: LlmRequest) -> AsyncIterator[str]:
        ctx = self._resolve(req.endpoint_override)
        url = f"{ctx.base_url}/chat/completions"
        payload = req.to_payload(stream=True)
        self._log_call("Calling provider (stream)", req, ctx)

        async def _open() -> httpx.Response:
            request = self._http.build_request("POST", url, json=payload, headers=auth_headers(ctx))
            try:
                resp = await self._http.send(request, stream=True)
            except httpx.HTTPError as e:
                raise self._translate(e) from e
            if not resp.is_success:
                try:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                finally:
                    await resp.aclose()
                raise ProviderError(resp.status_code, body, provider=self.name)
            return resp

        resp = await self._retry(_open, "chat_stream")
        return FragmentStream(resp, self._translate)

    # ---- 模型列表 ----

    async def list_models(self, endpoint: Optional[str] = None) -> List[str]:
        ctx = self._resolve(endpoint)
        url = f"{ctx.base_url}/models"

        async def _get() -> httpx.Response:
            try:
                resp = await self._http.get(url, headers=auth_headers(ctx))
            except httpx.HTTPError as e:
                raise self._translate(e) from e
            if not resp.is_success:
                raise ProviderError(resp.status_code, resp.text, provider=self.name)
            return resp

        resp = await self._retry(_get, "list_models")
        data = self._json(resp)
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise DecodeError("models response has no data list", payload=resp.text[:200])
        return [str(m["id"]) for m in items if isinstance(m, dict) and m.get("id")]

    async def model_details(self, model_id: str, endpoint: Optional[str] = None) -> Dict[str, Any]:
        """GET {base}/models/{id}，单次尝试，供能力补充使用。"""

        ctx = self._resolve(endpoint)
        try:
            resp = await self._http.get(f"{ctx.base_url}/models/{model_id}", headers=auth_headers(ctx))
        except httpx.HTTPError as e:
            raise self._translate(e) from e
        if not resp.is_success:
            raise ProviderError(resp.status_code, resp.text, provider=self.name)
        data = self._json(resp)
        return data if isinstance(data, dict) else {}

    # ---- 辅助方法 ----

    def _resolve(self, endpoint: Optional[str]) -> CredentialContext:
        return resolve_credentials(self.name, endpoint, cfg=self._settings)

    async def _retry(self, operation, label: str):
        return await retry(
            operation,
            max_retries=self._settings.max_retries,
            base_delay=self._settings.retry_base_delay,
            max_jitter=self._settings.retry_max_jitter,
            label=f"{self.name}.{label}",
        )

    def _translate(self, exc: httpx.HTTPError) -> Exception:
        return translate_http_error(exc, timeout=self._settings.http_timeout)

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise DecodeError(f"invalid JSON response: {e}", payload=resp.text[:200]) from e

    @staticmethod
    def _parse_response(data: Any) -> LlmResponse:
        if not isinstance(data, dict):
            raise DecodeError("response is not a JSON object")
        content = ""
        choices = data.get("choices") or []
        if choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
        return LlmResponse(content=content, usage=ChatUsage.from_dict(data.get("usage")))

    def _log_call(self, message: str, req: LlmRequest, ctx: CredentialContext) -> None:
        log_event(
            logging.INFO,
            message,
            provider=self.name,
            model=req.model,
            base_url=ctx.base_url,
            message_count=len(req.messages),
        )


async def validate_provider_credentials(
    provider: str,
    api_key: Optional[str] = None,
    endpoint: Optional[str] = None,
    timeout: float = 10.0,
) -> None:
    """用一次 GET /models 校验凭证是否可用，失败抛 ProviderError / NetworkError。"""

    if api_key:
        base_url = (endpoint or get_provider_config(provider).base_url).rstrip("/")
        ctx = CredentialContext(base_url=base_url, credential=api_key, credential_required=True)
    else:
        ctx = resolve_credentials(provider, endpoint)
    async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
        try:
            resp = await client.get(f"{ctx.base_url}/models", headers=auth_headers(ctx))
        except httpx.HTTPError as e:
            raise translate_http_error(e, timeout=timeout) from e
    if not resp.is_success:
        raise ProviderError(resp.status_code, resp.text, provider=provider)
