import pytest

from assistant_core.domain.exceptions import MissingCredentialError, UnsupportedProviderError
from assistant_core.providers.credentials import auth_headers, is_loopback_host, resolve_credentials


class SettingsStub:
    openai_base_url = "https://api.openai.com/v1"
    groq_base_url = "https://api.groq.com/openai/v1"
    lmstudio_api_base = "http://127.0.0.1:1234/v1"


def test_loopback_endpoint_without_key_is_optional():
    ctx = resolve_credentials("lmstudio", "http://127.0.0.1:1234/v1", environ={}, cfg=SettingsStub())
    assert ctx.credential_required is False
    assert ctx.credential is None
    assert ctx.base_url == "http://127.0.0.1:1234/v1"


def test_localhost_override_for_cloud_provider_is_optional():
    ctx = resolve_credentials("openai", "http://localhost:8080/v1/", environ={}, cfg=SettingsStub())
    assert ctx.credential_required is False
    assert ctx.base_url == "http://localhost:8080/v1"


def test_cloud_endpoint_without_key_fails():
    with pytest.raises(MissingCredentialError) as exc:
        resolve_credentials("openai", environ={}, cfg=SettingsStub())
    assert exc.value.env_var == "OPENAI_API_KEY"
    assert exc.value.retryable is False


def test_blank_key_counts_as_missing():
    with pytest.raises(MissingCredentialError):
        resolve_credentials("openai", environ={"OPENAI_API_KEY": "   "}, cfg=SettingsStub())


def test_groq_host_uses_groq_key():
    ctx = resolve_credentials("groq", environ={"GROQ_API_KEY": "gsk-1", "OPENAI_API_KEY": "sk-1"}, cfg=SettingsStub())
    assert ctx.credential == "gsk-1"
    assert ctx.credential_required is True
    assert ctx.base_url == "https://api.groq.com/openai/v1"


def test_lmstudio_base_read_from_environment_each_call():
    env = {"LMSTUDIO_API_BASE": "http://127.0.0.1:9999/v1", "LMSTUDIO_API_KEY": "local"}
    ctx = resolve_credentials("lmstudio", environ=env, cfg=SettingsStub())
    assert ctx.base_url == "http://127.0.0.1:9999/v1"
    assert ctx.credential == "local"

    env.pop("LMSTUDIO_API_BASE")
    ctx = resolve_credentials("lmstudio", environ=env, cfg=SettingsStub())
    assert ctx.base_url == "http://127.0.0.1:1234/v1"


def test_resolver_does_not_cache(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(MissingCredentialError):
        resolve_credentials("openai", cfg=SettingsStub())
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert resolve_credentials("openai", cfg=SettingsStub()).credential == "sk-test"


def test_unknown_provider():
    with pytest.raises(UnsupportedProviderError):
        resolve_credentials("not-a-real-provider", environ={}, cfg=SettingsStub())


def test_is_loopback_host():
    assert is_loopback_host("localhost")
    assert is_loopback_host("127.0.0.5")
    assert is_loopback_host("::1")
    assert not is_loopback_host("api.openai.com")
    assert not is_loopback_host("10.0.0.1")


def test_auth_headers_skip_empty_credential():
    ctx = resolve_credentials("lmstudio", environ={}, cfg=SettingsStub())
    assert "Authorization" not in auth_headers(ctx)
    ctx = resolve_credentials("openai", environ={"OPENAI_API_KEY": "sk"}, cfg=SettingsStub())
    assert auth_headers(ctx)["Authorization"] == "Bearer sk"
