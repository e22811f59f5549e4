from pathlib import Path
from typing import List, Optional, Protocol

from .models import SessionMeta, SessionRecord


class ConversationStore(Protocol):
    def create_if_missing(self, name: str) -> Path:
        ...

    def exists(self, name: str) -> bool:
        ...

    def append(self, name: str, record: SessionRecord) -> None:
        ...

    def load_history(self, name: str) -> List[SessionRecord]:
        ...

    def search(self, name: str, needle: str) -> List[SessionRecord]:
        ...

    def list_metadata(self) -> List[SessionMeta]:
        ...

    def get_active(self) -> Optional[str]:
        ...

    def set_active(self, name: str) -> None:
        ...
