import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from assistant_core.config.settings import settings
from assistant_core.domain.models import ModelInfo, now_ms
from assistant_core.infrastructure.logging.logger import log_event


CACHE_TTL_MS = 24 * 60 * 60 * 1000


class ModelCache:
    """模型列表缓存：{timestamp_ms, provider, models}，超过 TTL 视为过期。"""

    def __init__(self, path: str | Path | None = None, ttl_ms: int = CACHE_TTL_MS):
        self._path = Path(path or settings.models_cache_path).expanduser()
        self._ttl_ms = ttl_ms

    @property
    def path(self) -> Path:
        return self._path

    def write(self, provider: str, models: List[ModelInfo], timestamp_ms: Optional[int] = None) -> bool:
        """原子写入缓存；写失败只记录警告并返回 False，不影响调用方。"""

        blob = {
            "timestamp_ms": now_ms() if timestamp_ms is None else timestamp_ms,
            "provider": provider,
            "models": [m.to_dict() for m in models],
        }
        tmp_path = self._path.with_name(f"{self._path.name}.{uuid4().hex}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(blob, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            log_event(logging.WARNING, "Model cache write failed", path=str(self._path), error=str(e))
            return False
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return True

    def read(self, provider: Optional[str] = None, allow_stale: bool = False) -> List[ModelInfo]:
        blob = self._load()
        if blob is None:
            return []
        ts = blob.get("timestamp_ms")
        fresh = isinstance(ts, int) and now_ms() - ts <= self._ttl_ms
        if not (fresh or allow_stale):
            return []
        cached_provider = blob.get("provider")
        if provider and cached_provider and str(cached_provider).lower() != provider.lower():
            return []
        models = blob.get("models")
        if not isinstance(models, list):
            return []
        items: List[ModelInfo] = []
        for v in models:
            if not isinstance(v, dict) or not isinstance(v.get("name"), str):
                continue
            items.append(self._to_model(v, provider or str(cached_provider or "")))
        return items

    def _load(self) -> Optional[Dict[str, Any]]:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _to_model(v: Dict[str, Any], provider: str) -> ModelInfo:
        cw = v.get("context_window")
        modalities = v.get("modalities")
        if not isinstance(modalities, list):
            modalities = ["text"]
        return ModelInfo(
            name=v["name"],
            provider=provider,
            source="cache",
            streaming=bool(v.get("streaming", True)),
            context_window=cw if isinstance(cw, int) else None,
            supports_json=bool(v.get("supports_json", False)),
            supports_tools=bool(v.get("supports_tools", False)),
            modalities=[str(m) for m in modalities],
        )
