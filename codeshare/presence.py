"""세션별 접속자(presence) 관리.

프로세스 메모리에만 존재한다. 재시작하면 비어 있고, 클라이언트가 다시
접속하면서 채워진다.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, NamedTuple, Optional

from .errors import AlreadyJoined, SessionNotFound

# 최근에 닫힌 세션 표시만 유지한다
MAX_CLOSED_MARKS = 1024


@dataclass(frozen=True)
class Member:
    connection_id: str
    user_name: str

    def to_payload(self) -> Dict[str, str]:
        return {"userId": self.connection_id, "userName": self.user_name}


class Departure(NamedTuple):
    session_id: str
    user_name: str


class PresenceManager:
    """sessionId -> {connectionId: userName} 맵. 모든 연산은 하나의 락 아래서 원자적."""

    def __init__(self, *, max_closed_marks: int = MAX_CLOSED_MARKS) -> None:
        self._lock = threading.Lock()
        self._rooms: Dict[str, Dict[str, str]] = {}
        self._index: Dict[str, str] = {}  # connectionId -> sessionId
        self._closed: "OrderedDict[str, None]" = OrderedDict()
        self._max_closed_marks = max(1, max_closed_marks)

    def join(self, session_id: str, connection_id: str, user_name: str) -> List[Member]:
        """멤버 등록 후 자신을 제외한 현재 멤버 목록(이름순)을 반환."""
        with self._lock:
            if session_id in self._closed:
                raise SessionNotFound(session_id)
            current = self._index.get(connection_id)
            if current is not None and current != session_id:
                raise AlreadyJoined(connection_id, current)
            room = self._rooms.setdefault(session_id, {})
            room[connection_id] = user_name
            self._index[connection_id] = session_id
            others = [
                Member(cid, name) for cid, name in room.items() if cid != connection_id
            ]
        return sorted(others, key=lambda m: (m.user_name, m.connection_id))

    def leave(self, connection_id: str) -> Optional[Departure]:
        with self._lock:
            session_id = self._index.pop(connection_id, None)
            if session_id is None:
                return None
            room = self._rooms.get(session_id, {})
            user_name = room.pop(connection_id, "")
            if not room:
                self._rooms.pop(session_id, None)
        return Departure(session_id, user_name)

    def membership(self, connection_id: str) -> Optional[Departure]:
        with self._lock:
            session_id = self._index.get(connection_id)
            if session_id is None:
                return None
            return Departure(session_id, self._rooms[session_id][connection_id])

    def members_of(self, session_id: str) -> FrozenSet[Member]:
        with self._lock:
            room = self._rooms.get(session_id, {})
            return frozenset(Member(cid, name) for cid, name in room.items())

    def close_session(self, session_id: str) -> List[Member]:
        """세션을 닫힘으로 표시하고 모든 멤버를 제거. 이후 join은 거부된다."""
        with self._lock:
            self._closed[session_id] = None
            self._closed.move_to_end(session_id)
            while len(self._closed) > self._max_closed_marks:
                self._closed.popitem(last=False)
            room = self._rooms.pop(session_id, {})
            for cid in room:
                self._index.pop(cid, None)
        return [Member(cid, name) for cid, name in room.items()]

    def reopen(self, session_id: str) -> None:
        with self._lock:
            self._closed.pop(session_id, None)


__all__ = [
    "Departure",
    "Member",
    "PresenceManager",
]
