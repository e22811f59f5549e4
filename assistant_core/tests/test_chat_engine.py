import asyncio
import tempfile
from pathlib import Path

import httpx
import pytest

from assistant_core.agents.chat_engine import ChatEngine
from assistant_core.domain.exceptions import ProviderError, UnsupportedProviderError, ValidationError
from assistant_core.domain.models import ChatUsage, LlmResponse, SessionRecord
from assistant_core.infrastructure.storage.jsonl_store import JsonlConversationStore
from assistant_core.providers import ProviderRegistry


class SettingsStub:
    openai_base_url = "https://api.openai.com/v1"
    groq_base_url = "https://api.groq.com/openai/v1"
    lmstudio_api_base = "http://127.0.0.1:1234/v1"
    http_timeout = 5.0
    max_retries = 0
    retry_base_delay = 0.0
    retry_max_jitter = 0.0
    default_provider = "mock"
    default_model = "mock-small"
    context_token_budget = 4000
    chars_per_token = 4
    summarize_chunk_tokens = 600


class FakeProvider:
    """记录收到的请求，按提示返回固定回答。"""

    name = "openai"

    def __init__(self):
        self.requests = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, req):
        self.requests.append(req)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        prompt = req.messages[-1].content
        if prompt.startswith("Synthesize"):
            return LlmResponse(content="overall")
        return LlmResponse(content=f"summary {len(self.requests)}", usage=ChatUsage(total_tokens=2))


def _engine(store, cfg=None, fake=None):
    cfg = cfg or SettingsStub()
    if fake is not None:
        registry = ProviderRegistry({"openai": fake})
    else:
        registry = ProviderRegistry.create(cfg, http_client=httpx.AsyncClient())
    return ChatEngine(registry, store, cfg)


@pytest.mark.asyncio
async def test_ask_appends_user_and_assistant_records():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlConversationStore(root=Path(d))
        engine = _engine(store)
        res = await engine.ask("hello there", session="work")
        assert res.content == "[stub answer] hello there"

        history = store.load_history("work")
        assert [r.role for r in history] == ["user", "assistant"]
        assert history[0].content == "hello there"
        assert history[1].content == "[stub answer] hello there"
        assert history[1].model == "mock-small"


@pytest.mark.asyncio
async def test_ask_without_session_writes_nothing():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlConversationStore(root=Path(d))
        await _engine(store).ask("hi")
        assert store.list_metadata() == []


@pytest.mark.asyncio
async def test_history_is_sent_and_truncated():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlConversationStore(root=Path(d))
        store.append("s", SessionRecord(timestamp_ms=1, role="user", content="x" * 400))
        store.append("s", SessionRecord(timestamp_ms=2, role="assistant", content="short"))
        cfg = SettingsStub()
        cfg.context_token_budget = 10
        fake = FakeProvider()
        await _engine(store, cfg, fake).ask("next", provider="openai", model="gpt-4o-mini", session="s")

        sent = fake.requests[0]
        assert [m.content for m in sent.messages] == ["short", "next"]
        assert sent.model == "gpt-4o-mini"
        assert store.load_history("s")[-1].usage.total_tokens == 2


@pytest.mark.asyncio
async def test_empty_prompt_rejected():
    with tempfile.TemporaryDirectory() as d:
        with pytest.raises(ValidationError):
            await _engine(JsonlConversationStore(root=Path(d))).ask("   ")


@pytest.mark.asyncio
async def test_unknown_provider_rejected():
    with tempfile.TemporaryDirectory() as d:
        with pytest.raises(UnsupportedProviderError):
            await _engine(JsonlConversationStore(root=Path(d))).ask("hi", provider="nope")


@pytest.mark.asyncio
async def test_stream_records_only_after_completion():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlConversationStore(root=Path(d))
        engine = _engine(store)
        stream = await engine.ask_stream("one two three", session="s")
        first = await stream.__anext__()
        assert first == "[stub"
        assert store.load_history("s") == []

        rest = [p async for p in stream]
        assert first + "".join(rest) == "[stub answer] one two three"
        history = store.load_history("s")
        assert [r.role for r in history] == ["user", "assistant"]
        assert history[1].content == "[stub answer] one two three"


@pytest.mark.asyncio
async def test_abandoned_stream_writes_nothing():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlConversationStore(root=Path(d))
        stream = await _engine(store).ask_stream("a b c", session="s")
        await stream.__anext__()
        await stream.aclose()
        assert store.load_history("s") == []


@pytest.mark.asyncio
async def test_chat_turn_activates_session():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlConversationStore(root=Path(d))
        await _engine(store).chat_turn("repl", "hi")
        assert store.get_active() == "repl"
        assert len(store.load_history("repl")) == 2


@pytest.mark.asyncio
async def test_summarize_fans_out_then_synthesizes():
    with tempfile.TemporaryDirectory() as d:
        fake = FakeProvider()
        engine = _engine(JsonlConversationStore(root=Path(d)), fake=fake)
        text = " ".join(["word"] * 30)
        result = await engine.summarize(text, provider="openai", max_tokens_per_chunk=5)

        assert result.chunks > 1
        assert result.summary == "overall"
        assert len(fake.requests) == result.chunks + 1
        assert fake.max_in_flight == result.chunks
        assert "(part 1/" in fake.requests[0].messages[0].content
        assert fake.requests[-1].messages[0].content.startswith("Synthesize a concise overall summary")


@pytest.mark.asyncio
async def test_summarize_single_chunk_skips_synthesis():
    with tempfile.TemporaryDirectory() as d:
        fake = FakeProvider()
        engine = _engine(JsonlConversationStore(root=Path(d)), fake=fake)
        result = await engine.summarize("short text", provider="openai")
        assert result.chunks == 1
        assert result.summary == "summary 1"
        assert len(fake.requests) == 1


@pytest.mark.asyncio
async def test_foreign_role_line_does_not_break_session():
    with tempfile.TemporaryDirectory() as d:
        store = JsonlConversationStore(root=Path(d))
        path = store.create_if_missing("s")
        path.write_text('{"timestamp_ms": 1, "role": "tool", "content": "x"}\n', encoding="utf-8")
        res = await _engine(store).ask("hi", session="s")
        assert res.content == "[stub answer] hi"
        assert [r.role for r in store.load_history("s")] == ["user", "assistant"]


class ClosingStream:
    def __init__(self, pieces):
        self.pieces = list(pieces)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed or not self.pieces:
            raise StopAsyncIteration
        return self.pieces.pop(0)

    async def aclose(self):
        self.closed = True


class StreamingProvider(FakeProvider):
    def __init__(self):
        super().__init__()
        self.stream = ClosingStream(["a", "b", "c"])

    async def send_stream(self, req):
        self.requests.append(req)
        return self.stream


@pytest.mark.asyncio
async def test_closing_outer_stream_closes_provider_stream():
    with tempfile.TemporaryDirectory() as d:
        fake = StreamingProvider()
        store = JsonlConversationStore(root=Path(d))
        stream = await _engine(store, fake=fake).ask_stream("hi", provider="openai", session="s")
        assert await stream.__anext__() == "a"
        await stream.aclose()
        assert fake.stream.closed
        assert store.load_history("s") == []


class FailingChunkProvider(FakeProvider):
    """第二段立即失败，其余段一直挂起。"""

    def __init__(self):
        super().__init__()
        self.cancelled = 0

    async def send(self, req):
        self.requests.append(req)
        prompt = req.messages[-1].content
        if "(part 2/" in prompt:
            raise ProviderError(400, "bad chunk", provider="openai")
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return LlmResponse(content="late")


@pytest.mark.asyncio
async def test_summarize_failure_cancels_other_chunks():
    with tempfile.TemporaryDirectory() as d:
        fake = FailingChunkProvider()
        engine = _engine(JsonlConversationStore(root=Path(d)), fake=fake)
        text = " ".join(["word"] * 30)
        with pytest.raises(ProviderError):
            await engine.summarize(text, provider="openai", max_tokens_per_chunk=5)

        chunk_requests = [r for r in fake.requests if "(part " in r.messages[0].content]
        assert len(chunk_requests) > 2
        assert fake.cancelled == len(chunk_requests) - 1
        assert not any(r.messages[0].content.startswith("Synthesize") for r in fake.requests)
