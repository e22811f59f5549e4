import tempfile
from pathlib import Path

from assistant_core.domain.models import ModelInfo, now_ms
from assistant_core.infrastructure.storage import model_cache
from assistant_core.infrastructure.storage.model_cache import CACHE_TTL_MS, ModelCache


def _models():
    return [
        ModelInfo(name="gpt-4o-mini", provider="openai", source="remote", context_window=128000, supports_json=True),
        ModelInfo(name="gpt-3.5-turbo", provider="openai", source="remote"),
    ]


def test_write_then_read_fresh():
    with tempfile.TemporaryDirectory() as d:
        cache = ModelCache(path=Path(d) / "models.json")
        cache.write("openai", _models())
        items = cache.read("openai")
        assert [m.name for m in items] == ["gpt-4o-mini", "gpt-3.5-turbo"]
        assert all(m.source == "cache" for m in items)
        assert items[0].context_window == 128000
        assert items[0].supports_json is True
        assert not list(Path(d).glob("*.tmp"))


def test_stale_cache_is_ignored_unless_allowed():
    with tempfile.TemporaryDirectory() as d:
        cache = ModelCache(path=Path(d) / "models.json")
        cache.write("openai", _models(), timestamp_ms=now_ms() - CACHE_TTL_MS - 1000)
        assert cache.read("openai") == []
        assert len(cache.read("openai", allow_stale=True)) == 2


def test_other_provider_is_a_miss():
    with tempfile.TemporaryDirectory() as d:
        cache = ModelCache(path=Path(d) / "models.json")
        cache.write("groq", _models())
        assert cache.read("openai") == []
        assert len(cache.read("GROQ")) == 2


def test_missing_or_corrupt_file():
    with tempfile.TemporaryDirectory() as d:
        path = Path(d) / "models.json"
        cache = ModelCache(path=path)
        assert cache.read("openai") == []
        path.write_text("{not json", encoding="utf-8")
        assert cache.read("openai") == []


def test_write_under_a_file_is_best_effort():
    with tempfile.TemporaryDirectory() as d:
        blocker = Path(d) / "blocker"
        blocker.write_text("", encoding="utf-8")
        cache = ModelCache(path=blocker / "models.json")
        assert cache.write("openai", _models()) is False
        assert cache.read("openai") == []


def test_failed_replace_leaves_no_temp_file(monkeypatch):
    def broken_replace(src, dst):
        raise OSError("disk full")

    with tempfile.TemporaryDirectory() as d:
        cache = ModelCache(path=Path(d) / "models.json")
        monkeypatch.setattr(model_cache.os, "replace", broken_replace)
        assert cache.write("openai", _models()) is False
        assert list(Path(d).iterdir()) == []
