import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from assistant_core.config.settings import settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info and record.exc_info[1] is not None:
            payload["error"] = repr(record.exc_info[1])
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("assistant_core")
    logger.setLevel(settings.log_level)
    if any(getattr(h, "_assistant_core", False) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "assistant.log", encoding="utf-8")
    fh.setLevel(settings.log_level)
    fh.setFormatter(JsonFormatter())
    fh._assistant_core = True  # type: ignore[attr-defined]
    logger.addHandler(fh)
    return logger


def log_event(level: int, message: str, **fields) -> None:
    """带结构化字段写一条日志，字段会合并进 JSON 行。"""

    logger.log(level, message, extra={"extra": fields})


logger = setup_logger()
