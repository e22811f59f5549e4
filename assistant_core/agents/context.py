"""上下文构建：把会话历史 + 新的用户输入裁剪到 token 预算内。

token 数按字符数估算（默认 4 个字符约 1 个 token），
只是粗略近似，与任何厂商的真实分词都无关。
"""

import math
from typing import Iterable, List, Tuple

from assistant_core.domain.models import ROLES, ChatMessage, SessionRecord


CHARS_PER_TOKEN = 4


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    return math.ceil(len(text) / max(1, chars_per_token))


def build_messages_with_truncation(
    history: Iterable[SessionRecord],
    new_user_message: str,
    max_tokens: int,
    chars_per_token: int = CHARS_PER_TOKEN,
) -> List[ChatMessage]:
    """历史按原顺序转成消息，追加新的用户消息，再从末尾向前累加估算 token。

    超出预算即停止，最早的消息被丢弃；结果至少包含新的用户消息，
    即使它自己就超过了预算。不做摘要或压缩。
    role 不是 system/user/assistant 的记录不进入上下文。
    """

    messages = [record.to_message() for record in history if record.role in ROLES]
    messages.append(ChatMessage(role="user", content=new_user_message))

    budget = max(0, max_tokens)
    total = 0
    kept: List[ChatMessage] = []
    for msg in reversed(messages):
        cost = estimate_tokens(msg.content, chars_per_token)
        if total + cost > budget and kept:
            break
        kept.append(msg)
        total += cost
    kept.reverse()
    return kept


def chunk_text_for_token_limit(
    text: str,
    max_tokens_per_chunk: int,
    chars_per_token: int = CHARS_PER_TOKEN,
) -> List[Tuple[int, str]]:
    """按近似 token 上限切分长文本，尽量在空格或换行处断开。返回 (序号, 文本)。"""

    if not text:
        return []
    max_chars = max(0, max_tokens_per_chunk) * chars_per_token
    if max_chars == 0:
        return [(0, "")]
    chunks: List[str] = []
    start = 0
    last_break = 0
    for idx, ch in enumerate(text):
        if ch in ("\n", " "):
            last_break = idx
        if idx - start >= max_chars:
            if last_break > start:
                chunks.append(text[start:last_break])
                # 跳过断开处的空白字符
                start = last_break + 1
            else:
                chunks.append(text[start:idx])
                start = idx
            last_break = start
    if start < len(text):
        chunks.append(text[start:])
    return list(enumerate(chunks))
