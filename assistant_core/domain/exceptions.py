"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在 API 层或 CLI 层做统一捕获与用户提示。

retryable 标记在错误产生处确定，重试执行器只看这个标记：
网络错误、超时、408/429/5xx 可重试；其余 4xx、凭证缺失、
Provider 不支持/未实现、流解码失败都是致命错误。
"""

from typing import Optional, Tuple


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        retryable: 是否允许重试执行器再次尝试。
        extra: 其他补充字段（例如 provider、status 等）。
    """

    retryable_default = False

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 400,
        retryable: Optional[bool] = None,
        **extra,
    ):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.retryable = self.retryable_default if retryable is None else retryable
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class MissingCredentialError(BusinessError):
    """需要凭证但对应环境变量未设置。"""

    def __init__(self, env_var: str, base_url: str):
        super().__init__(
            code="MISSING_API_KEY",
            message=f"missing API key for base {base_url}: {env_var} not set",
            http_status=401,
            env_var=env_var,
            base_url=base_url,
        )
        self.env_var = env_var


class UnsupportedProviderError(BusinessError):
    """注册表中不存在的 Provider 名称。"""

    def __init__(self, provider: str):
        super().__init__(
            code="PROVIDER_UNSUPPORTED",
            message=f"unsupported provider: {provider}",
            provider=provider,
        )
        self.provider = provider


class NotImplementedProviderError(BusinessError):
    """已登记但尚未接入的 Provider，调用立即失败。"""

    def __init__(self, provider: str):
        super().__init__(
            code="PROVIDER_NOT_IMPLEMENTED",
            message=f"provider '{provider}' not implemented",
            http_status=501,
            provider=provider,
        )
        self.provider = provider


class ProviderError(BusinessError):
    """第三方 API 返回非 2xx 时抛出。"""

    def __init__(self, status: int, body: str, provider: str = ""):
        label = provider or "provider"
        super().__init__(
            code="API_ERROR",
            message=f"{label} error {status}: {body}",
            http_status=status,
            retryable=is_retryable_status(status),
            status=status,
            provider=provider,
        )
        self.status = status
        self.body = body


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、DNS 错误等。"""

    retryable_default = True


class RequestTimeoutError(NetworkError):
    """请求超时。消息中固定包含 "timed out"，方便上层提示调大超时。"""

    def __init__(self, message: str = "", timeout: Optional[float] = None):
        text = "request timed out"
        if timeout:
            text += f" after {timeout:g}s"
        if message:
            text += f": {message}"
        super().__init__(code="TIMEOUT", message=text, http_status=504, timeout=timeout)


class DecodeError(BusinessError):
    """Provider 返回的内容（JSON 或流式片段）无法解析。"""

    def __init__(self, message: str, payload: str = ""):
        super().__init__(code="DECODE_ERROR", message=f"failed to parse: {message}", http_status=502)
        self.payload = payload


class RetriesExhaustedError(BusinessError):
    """重试次数用尽，包装最后一次的底层错误。"""

    def __init__(self, attempts: int, last_error: BaseException, label: str = ""):
        prefix = f"{label}: " if label else ""
        super().__init__(
            code="RETRIES_EXHAUSTED",
            message=f"{prefix}request failed after retries ({attempts} attempts): {last_error}",
            http_status=getattr(last_error, "http_status", 502),
            attempts=attempts,
        )
        self.attempts = attempts
        self.last_error = last_error


class StoreError(BusinessError):
    """会话存储读写失败。"""


def is_retryable_status(status: int) -> bool:
    return status in (408, 429) or status >= 500


def classify_error(exc: BaseException) -> Tuple[str, Optional[str]]:
    """把异常映射为稳定的错误码与可选提示，供 CLI/JSON 输出使用。"""

    if isinstance(exc, RetriesExhaustedError):
        return classify_error(exc.last_error)
    if isinstance(exc, MissingCredentialError):
        return "missing_api_key", f"set {exc.env_var} in env or .env"
    if isinstance(exc, UnsupportedProviderError):
        return "provider_unsupported", None
    if isinstance(exc, NotImplementedProviderError):
        return "not_implemented", None
    if isinstance(exc, RequestTimeoutError):
        return "timeout", "try increasing http_timeout or check network"
    if isinstance(exc, NetworkError):
        return "network_error", None
    if isinstance(exc, ProviderError):
        return "provider_error", None
    if isinstance(exc, DecodeError):
        return "parse_error", None
    if isinstance(exc, StoreError):
        if exc.code == "SESSION_NOT_FOUND":
            return "session_not_found", None
        return "store_error", None
    if isinstance(exc, ValidationError):
        return "invalid_args", None
    return "unknown", None
