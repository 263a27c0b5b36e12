"""세션 동기화 엔진의 예외 계층."""

from __future__ import annotations


class CodeShareError(Exception):
    """모든 도메인 예외의 기반 클래스. ``code``는 와이어 에러 코드."""

    code = "SERVER_ERROR"


class NotFound(CodeShareError):
    code = "NOT_FOUND"


class SessionNotFound(NotFound):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class FileNotFound(NotFound):
    code = "FILE_NOT_FOUND"

    def __init__(self, session_id: str, path: str) -> None:
        super().__init__(f"file not found: {session_id}:{path}")
        self.session_id = session_id
        self.path = path


class InvalidInput(CodeShareError):
    """필수 필드 누락 또는 타입 불일치."""

    code = "INVALID_INPUT"


class StoreUnavailable(CodeShareError):
    """저장소 타임아웃/IO 오류. 호출자에게는 일반 실패로 노출된다."""


class IdCollision(CodeShareError):
    """세션 id 충돌. 레지스트리 내부에서 재시도한다."""


class AlreadyJoined(CodeShareError):
    """다른 세션에 이미 참여한 연결이 다시 join 한 경우."""

    code = "ALREADY_JOINED"

    def __init__(self, connection_id: str, session_id: str) -> None:
        super().__init__(f"connection {connection_id} already joined {session_id}")
        self.connection_id = connection_id
        self.session_id = session_id


class NotJoined(CodeShareError):
    """참여하지 않은 세션으로 이벤트를 보낸 경우."""

    code = "NOT_JOINED"

    def __init__(self, connection_id: str, session_id: str) -> None:
        super().__init__(f"connection {connection_id} has not joined {session_id}")
        self.connection_id = connection_id
        self.session_id = session_id


# 요청/응답 경로에서 그대로 노출되는 예외
SURFACED_ERRORS = (NotFound, InvalidInput, AlreadyJoined)


def wire_code(exc: BaseException) -> str:
    """예외를 클라이언트에 보낼 에러 코드로 변환."""
    if isinstance(exc, SURFACED_ERRORS):
        return exc.code
    return "SERVER_ERROR"


__all__ = [
    "AlreadyJoined",
    "CodeShareError",
    "FileNotFound",
    "IdCollision",
    "InvalidInput",
    "NotFound",
    "NotJoined",
    "SessionNotFound",
    "StoreUnavailable",
    "wire_code",
]
