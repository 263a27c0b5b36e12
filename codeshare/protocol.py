"""JSON line 기반 프로토콜 유틸리티 및 이벤트 이름."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidInput


MAX_MESSAGE_BYTES = 1_000_000  # 1MB 제한 (파일 전체 내용이 한 줄에 실린다)

# 수신 이벤트 (실시간)
OP_JOIN = "join-session"
OP_CODE_CHANGE = "code-change"
OP_CURSOR_CHANGE = "cursor-change"

# 수신 요청 (요청/응답)
OP_CREATE_SESSION = "create-session"
OP_GET_SESSION = "get-session"
OP_LIST_SESSIONS = "list-sessions"
OP_DELETE_SESSION = "delete-session"
OP_PUT_FILE = "put-file"
OP_GET_FILE = "get-file"
OP_LIST_FILES = "list-files"
OP_PING = "ping"

# 송신 이벤트
EV_CURRENT_USERS = "current-users"
EV_USER_JOINED = "user-joined"
EV_USER_LEFT = "user-left"
EV_CODE_UPDATE = "code-update"
EV_CURSOR_UPDATE = "cursor-update"
EV_SESSION_DELETED = "session-deleted"
EV_RESULT = "result"
EV_ERROR = "error"
EV_PONG = "pong"


class ProtocolError(Exception):
    """프레이밍/파싱 중 발생하는 예외."""


class JsonLineFramer:
    """TCP 스트림을 JSON line 단위로 분리하는 헬퍼."""

    def __init__(self, *, max_message_bytes: int = MAX_MESSAGE_BYTES) -> None:
        self._buffer = bytearray()
        self._max_message_bytes = max_message_bytes

    def feed(self, chunk: bytes) -> List[Any]:
        """새로운 바이트 청크를 넣고 완성된 메시지들을 반환."""
        if not chunk:
            return []
        self._buffer.extend(chunk)

        messages: List[Any] = []
        while True:
            newline_index = self._buffer.find(b"\n")
            if newline_index == -1:
                break
            line = bytes(self._buffer[:newline_index]).strip()
            del self._buffer[: newline_index + 1]
            if line:
                messages.append(parse_json_line(line))
        # 개행 없이 남은 조각만 크기 제한 대상
        if len(self._buffer) > self._max_message_bytes:
            self._buffer.clear()
            raise ProtocolError("message exceeds max size")
        return messages


def parse_json_line(line: bytes) -> Any:
    """단일 JSON line을 파싱."""
    try:
        return json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"bad json: {exc}") from exc


def encode_message(obj: Mapping[str, Any]) -> bytes:
    """dict를 JSON line 바이트로 직렬화."""
    try:
        payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"cannot encode message: {exc}") from exc
    return (payload + "\n").encode("utf-8")


def event(name: str, **fields: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"ev": name}
    payload.update(fields)
    return payload


def require_str(message: Mapping[str, Any], *keys: str, allow_empty: bool = False) -> str:
    """``keys`` 중 처음 존재하는 문자열 필드를 반환. 없으면 InvalidInput."""
    value: Optional[Any] = None
    for key in keys:
        if key in message:
            value = message[key]
            break
    if not isinstance(value, str):
        raise InvalidInput(f"{keys[0]} required")
    if not allow_empty and not value.strip():
        raise InvalidInput(f"{keys[0]} required")
    return value


__all__ = [
    "JsonLineFramer",
    "MAX_MESSAGE_BYTES",
    "ProtocolError",
    "encode_message",
    "event",
    "parse_json_line",
    "require_str",
]
