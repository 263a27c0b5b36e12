"""세션 레코드 생성/조회/삭제."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List

from .errors import IdCollision, InvalidInput, SessionNotFound
from .presence import Member, PresenceManager
from .store import SessionStore

LOGGER = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 20
MAX_ID_ATTEMPTS = 5


@dataclass(frozen=True)
class Session:
    id: str
    name: str
    created_at: float
    last_activity: float

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Session":
        return cls(
            id=record["id"],
            name=record.get("name", ""),
            created_at=float(record.get("createdAt", 0.0)),
            last_activity=float(record.get("lastActivity", 0.0)),
        )


def new_session_id() -> str:
    return uuid.uuid4().hex[:8]


class SessionRegistry:
    """세션 레코드의 소유자.

    같은 세션 id에 대한 변경(touch, 파일 쓰기, 삭제)은 ``locked(id)``로
    직렬화된다. 서로 다른 세션끼리는 잠금을 공유하지 않는다.
    """

    def __init__(self, store: SessionStore, presence: PresenceManager, *, id_factory=new_session_id) -> None:
        self.store = store
        self.presence = presence
        self._id_factory = id_factory
        # sessionId -> [RLock, 사용 중인 스레드 수]. 아무도 쓰지 않으면 지운다
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def locked(self, session_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.setdefault(session_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(session_id, None)

    def create(self, name: Any) -> Session:
        if not isinstance(name, str) or not name.strip():
            raise InvalidInput("name required")
        now = time.time()
        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            session = Session(id=self._id_factory(), name=name.strip(), created_at=now, last_activity=now)
            if self.store.insert_session(session.to_record()):
                # 예전에 삭제된 id가 재사용될 수 있으므로 presence 그룹을 다시 연다
                self.presence.reopen(session.id)
                LOGGER.info("session created: %s (%s)", session.id, session.name)
                return session
            LOGGER.warning("session id collision: %s (attempt %d)", session.id, attempt)
        raise IdCollision(f"no free session id after {MAX_ID_ATTEMPTS} attempts")

    def get(self, session_id: str) -> Session:
        record = self.store.load_session(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return Session.from_record(record)

    def exists(self, session_id: str) -> bool:
        return self.store.load_session(session_id) is not None

    def list(self, limit: Any = DEFAULT_LIST_LIMIT) -> List[Session]:
        if limit is None:
            limit = DEFAULT_LIST_LIMIT
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidInput("limit must be a positive integer")
        sessions = [Session.from_record(record) for record in self.store.list_sessions()]
        sessions.sort(key=lambda s: s.last_activity, reverse=True)
        return sessions[:limit]

    def delete(self, session_id: str) -> List[Member]:
        """세션과 그 파일을 지우고, presence 그룹을 닫은 뒤 쫓겨난 멤버를 반환."""
        with self.locked(session_id):
            if not self.exists(session_id):
                raise SessionNotFound(session_id)
            # 세션 행을 먼저 지워야 늦게 도착한 파일 쓰기가 거부된다
            self.store.delete_session(session_id)
            removed_files = self.store.delete_files(session_id)
            # 저장소 행이 모두 사라진 뒤 닫아야 동시 join이 남지 않는다
            evicted = self.presence.close_session(session_id)
        LOGGER.info(
            "session deleted: %s (files=%d, members=%d)", session_id, removed_files, len(evicted)
        )
        return evicted

    def touch(self, session_id: str) -> None:
        """``lastActivity`` 갱신. 실패는 로그만 남긴다."""
        try:
            with self.locked(session_id):
                self._touch_locked(session_id)
        except Exception as exc:
            LOGGER.warning("touch failed for %s: %s", session_id, exc)

    def _touch_locked(self, session_id: str) -> None:
        record = self.store.load_session(session_id)
        if record is None:
            LOGGER.debug("touch skipped, session gone: %s", session_id)
            return
        previous = float(record.get("lastActivity", 0.0))
        record["lastActivity"] = max(time.time(), previous)
        self.store.save_session(record)


__all__ = [
    "DEFAULT_LIST_LIMIT",
    "Session",
    "SessionRegistry",
    "new_session_id",
]
