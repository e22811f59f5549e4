import httpx
import pytest

from assistant_core.domain.exceptions import NotImplementedProviderError, UnsupportedProviderError
from assistant_core.domain.models import ChatMessage, LlmRequest
from assistant_core.providers import KNOWN_PROVIDERS, ProviderRegistry
from assistant_core.providers.openai_client import OpenAiCompatibleAdapter
from assistant_core.providers.registry import get_provider_config
from assistant_core.providers.stub import MockAdapter, NotImplementedAdapter


class SettingsStub:
    openai_base_url = "https://api.openai.com/v1"
    groq_base_url = "https://api.groq.com/openai/v1"
    lmstudio_api_base = "http://127.0.0.1:1234/v1"
    http_timeout = 5.0
    max_retries = 0
    retry_base_delay = 0.0
    retry_max_jitter = 0.0


def _registry():
    return ProviderRegistry.create(SettingsStub(), http_client=httpx.AsyncClient())


def _req():
    return LlmRequest(model="m", messages=[ChatMessage(role="user", content="hi")])


def test_lookup_is_case_insensitive():
    reg = _registry()
    assert reg.get("OpenAI") is reg.get("openai")
    assert isinstance(reg.get("GROQ"), OpenAiCompatibleAdapter)
    assert isinstance(reg.get("lmstudio"), OpenAiCompatibleAdapter)
    assert isinstance(reg.get("Mock"), MockAdapter)


def test_every_known_provider_is_registered():
    reg = _registry()
    assert sorted(reg.names()) == sorted(KNOWN_PROVIDERS)
    for name in ("anthropic", "grok", "xai", "gemini", "ollama"):
        assert isinstance(reg.get(name), NotImplementedAdapter)


def test_unknown_name_fails():
    reg = _registry()
    with pytest.raises(UnsupportedProviderError) as exc:
        reg.get("foobar")
    assert "unsupported provider" in str(exc.value)
    assert reg.find("foobar") is None


def test_provider_config_is_case_insensitive():
    cfg = get_provider_config("GrOq", SettingsStub(), environ={})
    assert cfg.name == "groq"
    assert cfg.base_url == "https://api.groq.com/openai/v1"
    assert cfg.api_key_env == "GROQ_API_KEY"
    with pytest.raises(UnsupportedProviderError):
        get_provider_config("", SettingsStub(), environ={})


@pytest.mark.asyncio
async def test_stub_providers_fail_immediately():
    adapter = NotImplementedAdapter("anthropic")
    with pytest.raises(NotImplementedProviderError) as exc:
        await adapter.send(_req())
    assert exc.value.retryable is False
    assert "not implemented" in str(exc.value)
    with pytest.raises(NotImplementedProviderError):
        await adapter.send_stream(_req())
    with pytest.raises(NotImplementedProviderError):
        await adapter.list_models()


@pytest.mark.asyncio
async def test_mock_adapter_is_deterministic():
    adapter = MockAdapter()
    res = await adapter.send(_req())
    assert res.content == "[stub answer] hi"
    assert res.usage is None
    pieces = [p async for p in await adapter.send_stream(_req())]
    assert "".join(pieces) == "[stub answer] hi"
    assert await adapter.list_models() == ["mock-small", "mock-medium", "mock-large"]


@pytest.mark.asyncio
async def test_registry_closes_shared_client():
    client = httpx.AsyncClient()
    async with ProviderRegistry.create(SettingsStub(), http_client=client):
        pass
    assert client.is_closed
