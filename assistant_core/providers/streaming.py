"""Server-Sent-Events 风格流的增量解码。

每个有意义的行形如 ``data: {...}``，结束行为 ``data: [DONE]``。
字节在 chunk 之间缓冲，按换行切分，因此一行被拆到两个 chunk 里也能正确还原。

负载优先用 json.loads 解析（能正确处理转义和字段顺序），
解析失败时退回到简单的文本扫描：找 ``"content":``，取其后第一对引号之间的内容。
两者都拿不到内容才算解码错误。
"""

import json
from typing import Any, AsyncIterable, AsyncIterator, Optional

from assistant_core.domain.exceptions import DecodeError


DATA_MARKER = "data:"
DONE_SENTINEL = "[DONE]"
CONTENT_KEY = '"content":'

# decode_data_line 遇到结束行时的返回值
END_OF_STREAM = object()


def scan_content_field(payload: str) -> Optional[str]:
    """在 JSON 文本里粗略查找 content 字段值，找不到返回 None。"""

    idx = payload.find(CONTENT_KEY)
    if idx < 0:
        return None
    after = payload[idx + len(CONTENT_KEY):]
    start = after.find('"')
    if start < 0:
        return None
    after = after[start + 1:]
    end = after.find('"')
    if end < 0:
        return None
    return after[:end]


def extract_content(data: Any) -> Optional[str]:
    """从已解析的增量对象里取文本，兼容 delta / message / 顶层 content。"""

    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        for key in ("delta", "message"):
            part = first.get(key)
            if isinstance(part, dict) and isinstance(part.get("content"), str):
                return part["content"]
        return None
    content = data.get("content")
    return content if isinstance(content, str) else None


def decode_data_line(line: str):
    """解析一行。返回片段文本；非 data 行、空内容返回 None；结束行返回 END_OF_STREAM。"""

    line = line.strip()
    if not line.startswith(DATA_MARKER):
        return None
    payload = line[len(DATA_MARKER):].strip()
    if not payload:
        return None
    if payload == DONE_SENTINEL:
        return END_OF_STREAM
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        piece = scan_content_field(payload)
        if piece is None:
            raise DecodeError("malformed stream payload", payload=payload)
        return piece or None
    piece = extract_content(data)
    return piece or None


async def decode_event_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """把字节流解码为文本片段序列。

    遇到 [DONE] 后不再产出片段，但会继续读完底层流。
    序列只能向前消费一次；调用方停止迭代即放弃连接。
    """

    buffer = b""
    done = False
    async for chunk in chunks:
        if not chunk:
            continue
        if done:
            continue
        buffer += chunk
        while True:
            nl = buffer.find(b"\n")
            if nl < 0:
                break
            raw, buffer = buffer[:nl], buffer[nl + 1:]
            piece = decode_data_line(raw.decode("utf-8", errors="replace"))
            if piece is END_OF_STREAM:
                done = True
                buffer = b""
                break
            if piece:
                yield piece
    if not done and buffer.strip():
        piece = decode_data_line(buffer.decode("utf-8", errors="replace"))
        if piece and piece is not END_OF_STREAM:
            yield piece
