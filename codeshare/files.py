"""세션별 파일 테이블. 같은 (sessionId, path)에 대한 쓰기는 마지막 쓰기가 이긴다."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List

from .errors import FileNotFound, InvalidInput, SessionNotFound
from .registry import SessionRegistry

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileRecord:
    path: str
    content: str
    last_modified: float

    def to_payload(self) -> Dict[str, Any]:
        return {"path": self.path, "content": self.content, "lastModified": self.last_modified}


@dataclass(frozen=True)
class FileEntry:
    path: str
    last_modified: float

    def to_payload(self) -> Dict[str, Any]:
        return {"path": self.path, "lastModified": self.last_modified}


class FileTable:
    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry
        self.store = registry.store

    def put(self, session_id: str, path: Any, content: Any) -> FileRecord:
        if not isinstance(path, str) or not path.strip():
            raise InvalidInput("path required")
        if not isinstance(content, str):
            raise InvalidInput("content must be a string")
        # 삭제와 같은 락을 잡아야 세션 없는 파일이 생기지 않는다
        with self.registry.locked(session_id):
            if not self.registry.exists(session_id):
                raise SessionNotFound(session_id)
            previous = self.store.load_file(session_id, path)
            last_modified = time.time()
            if previous is not None:
                last_modified = max(last_modified, float(previous.get("lastModified", 0.0)))
            record = FileRecord(path, content, last_modified)
            self.store.save_file(session_id, record.to_payload())
        LOGGER.debug("file saved: %s:%s (%d chars)", session_id, path, len(content))
        self.registry.touch(session_id)
        return record

    def get(self, session_id: str, path: str) -> FileRecord:
        if not self.registry.exists(session_id):
            raise SessionNotFound(session_id)
        record = self.store.load_file(session_id, path)
        if record is None:
            raise FileNotFound(session_id, path)
        self.registry.touch(session_id)
        return FileRecord(
            path=record["path"],
            content=record.get("content", ""),
            last_modified=float(record.get("lastModified", 0.0)),
        )

    def list(self, session_id: str) -> List[FileEntry]:
        if not self.registry.exists(session_id):
            raise SessionNotFound(session_id)
        entries = [
            FileEntry(record["path"], float(record.get("lastModified", 0.0)))
            for record in self.store.list_files(session_id)
        ]
        entries.sort(key=lambda e: e.path)
        self.registry.touch(session_id)
        return entries


__all__ = [
    "FileEntry",
    "FileRecord",
    "FileTable",
]
