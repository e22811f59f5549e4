import json
import re
from pathlib import Path
from typing import List, Optional, Tuple

from assistant_core.config.settings import settings
from assistant_core.domain.conversation import ConversationStore
from assistant_core.domain.exceptions import StoreError
from assistant_core.domain.models import SessionMeta, SessionRecord


_INVALID_NAME = re.compile(r"[\\/\x00]")


class JsonlConversationStore(ConversationStore):
    """每个会话一个 .jsonl 文件，另有一个单值文件记录当前活动会话。

    只追加、不加锁：多个进程同时写同一会话时行可能交错。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.sessions_root).expanduser().resolve()
        self._sessions_dir = self._root / "sessions"
        self._active_path = self._root / "active_session"

    @property
    def active_path(self) -> Path:
        return self._active_path

    def session_path(self, name: str) -> Path:
        self._validate_name(name)
        return self._sessions_dir / f"{name}.jsonl"

    def exists(self, name: str) -> bool:
        return self.session_path(name).exists()

    def create_if_missing(self, name: str) -> Path:
        path = self.session_path(name)
        try:
            self._sessions_dir.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=f"creating session file {path}: {e}") from e
        return path

    def append(self, name: str, record: SessionRecord) -> None:
        path = self.create_if_missing(name)
        line = json.dumps(record.to_dict(), ensure_ascii=False)
        try:
            with path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=f"appending to session {name}: {e}") from e

    def load_history(self, name: str) -> List[SessionRecord]:
        path = self.session_path(name)
        items: List[SessionRecord] = []
        if not path.exists():
            return items
        for line in self._read_lines(path):
            if not line.strip():
                continue
            record = self._parse_line(line)
            if record is not None:
                items.append(record)
        return items

    def search(self, name: str, needle: str) -> List[SessionRecord]:
        needle_lower = needle.lower()
        return [r for r in self.load_history(name) if needle_lower in r.content.lower()]

    def list_metadata(self) -> List[SessionMeta]:
        if not self._sessions_dir.exists():
            return []
        items: List[SessionMeta] = []
        for path in self._sessions_dir.glob("*.jsonl"):
            if not path.is_file():
                continue
            try:
                size = path.stat().st_size
            except OSError as e:
                raise StoreError(code="STORE_READ_ERROR", message=f"stat {path}: {e}") from e
            num_lines, last_ts = self._tail_meta(path)
            items.append(
                SessionMeta(name=path.stem, path=path, num_lines=num_lines, file_size=size, last_used_ms=last_ts)
            )
        # 最近使用的在前，没有时间戳的排最后
        items.sort(key=lambda m: (m.last_used_ms is not None, m.last_used_ms or 0), reverse=True)
        return items

    def get_active(self) -> Optional[str]:
        if not self._active_path.exists():
            return None
        try:
            name = self._active_path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise StoreError(code="STORE_READ_ERROR", message=f"reading active session: {e}") from e
        return name or None

    def set_active(self, name: str) -> None:
        self._validate_name(name)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            self._active_path.write_text(name, encoding="utf-8")
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=f"writing active session: {e}") from e

    def _tail_meta(self, path: Path) -> Tuple[int, Optional[int]]:
        num = 0
        last_ts: Optional[int] = None
        for line in self._read_lines(path):
            num += 1
            record = self._parse_line(line)
            if record is not None:
                last_ts = record.timestamp_ms
        return num, last_ts

    @staticmethod
    def _read_lines(path: Path) -> List[str]:
        try:
            return path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as e:
            raise StoreError(code="STORE_READ_ERROR", message=f"reading {path}: {e}") from e

    @staticmethod
    def _parse_line(line: str) -> Optional[SessionRecord]:
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                return None
            return SessionRecord.from_dict(data)
        except (ValueError, KeyError, TypeError):
            return None

    @staticmethod
    def _validate_name(name: str) -> None:
        if not name or not name.strip() or _INVALID_NAME.search(name) or name in (".", ".."):
            raise StoreError(code="INVALID_SESSION_NAME", message=f"invalid session name: {name!r}")
