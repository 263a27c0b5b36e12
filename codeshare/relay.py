"""연결 관리, 실시간 이벤트 중계 및 요청/응답 라우팅."""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
import uuid
import zlib
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import CodeShareError, InvalidInput, NotJoined, SessionNotFound, wire_code
from .files import FileTable
from .presence import PresenceManager
from .protocol import (
    EV_CODE_UPDATE,
    EV_CURRENT_USERS,
    EV_CURSOR_UPDATE,
    EV_ERROR,
    EV_PONG,
    EV_RESULT,
    EV_SESSION_DELETED,
    EV_USER_JOINED,
    EV_USER_LEFT,
    OP_CODE_CHANGE,
    OP_CREATE_SESSION,
    OP_CURSOR_CHANGE,
    OP_DELETE_SESSION,
    OP_GET_FILE,
    OP_GET_SESSION,
    OP_JOIN,
    OP_LIST_FILES,
    OP_LIST_SESSIONS,
    OP_PING,
    OP_PUT_FILE,
    ProtocolError,
    encode_message,
    event,
    require_str,
)
from .registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

ANONYMOUS = "Anonymous"
DEFAULT_OUTBOX_SIZE = 256

PersistErrorHook = Callable[[str, str, str, BaseException], None]


class Connection:
    """TCP 연결 상태.

    ``send``는 아웃박스 큐에 넣기만 하고 실제 전송은 전용 writer 스레드가
    한다. 느린 수신자가 브로드캐스트를 막지 않도록 큐가 가득 차면 연결을
    죽은 것으로 처리한다.
    """

    def __init__(
        self,
        cid: str,
        sock: socket.socket,
        addr: tuple[str, int],
        *,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
    ) -> None:
        self.id = cid
        self.socket = sock
        self.addr = addr
        self.alive = True
        self.last_seen = time.monotonic()
        self._closed = False
        self._outbox: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=max(1, outbox_size))
        self._writer = threading.Thread(target=self._writer_loop, name=f"writer-{cid}", daemon=True)

    def start(self) -> None:
        self._writer.start()

    def send(self, payload: Dict[str, Any]) -> None:
        if not self.alive:
            raise ConnectionError("connection closed")
        data = encode_message(payload)
        try:
            self._outbox.put_nowait(data)
        except queue.Full as exc:
            self.alive = False
            raise ConnectionError("outbox full") from exc

    def _writer_loop(self) -> None:
        while True:
            data = self._outbox.get()
            if data is None:
                return
            try:
                self.socket.sendall(data)
            except OSError as exc:
                self.alive = False
                LOGGER.debug("send failed: %s (%s)", self.id, exc)
                return

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.alive = False
        try:
            self._outbox.put_nowait(None)
        except queue.Full:
            pass  # 소켓이 닫히면 writer도 실패하며 종료된다
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        finally:
            try:
                self.socket.close()
            except OSError:
                pass

    def touch(self) -> None:
        self.last_seen = time.monotonic()


class SyncRelay:
    """세션 그룹 간 이벤트 중계를 담당.

    실시간 이벤트(join/code-change/cursor-change)의 실패는 로그만 남기고
    버린다. 요청/응답 op의 실패는 ``error`` 이벤트로 돌려준다.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        files: FileTable,
        presence: PresenceManager,
        heartbeat_timeout: int = 120,
        persist_lanes: int = 4,
        on_persist_error: Optional[PersistErrorHook] = None,
    ) -> None:
        self.registry = registry
        self.files = files
        self.presence = presence
        self.heartbeat_timeout = heartbeat_timeout
        self.on_persist_error = on_persist_error
        self.connections: Dict[str, Any] = {}
        self._connections_lock = threading.Lock()
        # 세션마다 한 레인에 고정되어 같은 세션의 쓰기 순서가 유지된다
        self._lanes = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"persist-{i}")
            for i in range(max(1, persist_lanes))
        ]
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._watchdog_thread: Optional[threading.Thread] = None
        if heartbeat_timeout:
            self._watchdog_thread = threading.Thread(target=self._watchdog_loop, daemon=True)
            self._watchdog_thread.start()

        self._realtime_handlers = {
            OP_JOIN: self._handle_join,
            OP_CODE_CHANGE: self._handle_code_change,
            OP_CURSOR_CHANGE: self._handle_cursor,
        }
        self._request_handlers = {
            OP_CREATE_SESSION: self._op_create_session,
            OP_GET_SESSION: self._op_get_session,
            OP_LIST_SESSIONS: self._op_list_sessions,
            OP_DELETE_SESSION: self._op_delete_session,
            OP_PUT_FILE: self._op_put_file,
            OP_GET_FILE: self._op_get_file,
            OP_LIST_FILES: self._op_list_files,
        }

    # ---------- 연결 관리 ----------
    def new_connection(
        self, sock: socket.socket, addr: tuple[str, int], *, outbox_size: int = DEFAULT_OUTBOX_SIZE
    ) -> Connection:
        conn = Connection(f"C-{uuid.uuid4().hex[:8]}", sock, addr, outbox_size=outbox_size)
        conn.start()
        self.register(conn)
        LOGGER.info("connection opened: %s %s", conn.id, addr)
        return conn

    def register(self, conn: Any) -> None:
        with self._connections_lock:
            self.connections[conn.id] = conn

    def unregister(self, conn: Any) -> None:
        with self._connections_lock:
            known = self.connections.pop(conn.id, None) is not None
        self.handle_disconnect(conn.id)
        conn.close()
        if known:
            LOGGER.info("connection closed: %s", conn.id)

    def _get_connection(self, cid: str) -> Optional[Any]:
        with self._connections_lock:
            return self.connections.get(cid)

    # ---------- 라우팅 ----------
    def route_message(self, conn: Any, message: Dict[str, Any]) -> None:
        conn.touch()
        op = message.get("op")
        if not isinstance(op, str) or not op:
            self.send_error(conn, "INVALID_INPUT", message="missing op")
            return

        if op in self._realtime_handlers:
            self._dispatch_event(conn, op, message)
        elif op in self._request_handlers:
            self._dispatch_request(conn, op, message)
        elif op == OP_PING:
            self._safe_send(conn, event(EV_PONG, timestamp=time.time(), **_req_id(message)))
        else:
            self.send_error(conn, "UNKNOWN_OP", op=op, **_req_id(message))

    def _dispatch_event(self, conn: Any, op: str, message: Dict[str, Any]) -> None:
        try:
            self._realtime_handlers[op](conn, message)
        except CodeShareError as exc:
            LOGGER.warning("%s dropped (%s): %s", op, conn.id, exc)
        except Exception:
            LOGGER.exception("%s handler failed (%s)", op, conn.id)

    def _dispatch_request(self, conn: Any, op: str, message: Dict[str, Any]) -> None:
        try:
            data = self._request_handlers[op](conn, message)
        except CodeShareError as exc:
            LOGGER.info("%s failed (%s): %s", op, conn.id, exc)
            self.send_error(conn, wire_code(exc), op=op, message=str(exc), **_req_id(message))
            return
        except Exception as exc:
            LOGGER.exception("%s handler failed (%s)", op, conn.id)
            self.send_error(conn, "SERVER_ERROR", op=op, message=str(exc), **_req_id(message))
            return
        self._safe_send(conn, event(EV_RESULT, op=op, data=data, **_req_id(message)))

    # ---------- 실시간 이벤트 ----------
    def _handle_join(self, conn: Any, message: Dict[str, Any]) -> None:
        session_id = require_str(message, "sessionId")
        user_name = message.get("userName")
        if not isinstance(user_name, str) or not user_name.strip():
            user_name = ANONYMOUS
        self.registry.get(session_id)
        others = self.presence.join(session_id, conn.id, user_name)
        if not self.registry.exists(session_id):
            # 닫힘 표시가 밀려난 뒤 삭제된 세션에 들어온 경우
            self.presence.leave(conn.id)
            raise SessionNotFound(session_id)
        LOGGER.info("%s (%s) joined session %s", conn.id, user_name, session_id)

        self._broadcast(
            session_id,
            event(EV_USER_JOINED, userId=conn.id, userName=user_name),
            exclude=conn.id,
        )
        membership = self.presence.membership(conn.id)
        if membership is None or membership.session_id != session_id:
            LOGGER.info("%s evicted from %s before current-users", conn.id, session_id)
            return
        self._safe_send(
            conn,
            event(EV_CURRENT_USERS, sessionId=session_id, users=[m.to_payload() for m in others]),
        )

    def _handle_code_change(self, conn: Any, message: Dict[str, Any]) -> None:
        session_id = require_str(message, "sessionId")
        path = require_str(message, "path", "filePath")
        content = require_str(message, "content", allow_empty=True)
        self._require_member(conn, session_id)

        # 저장 결과를 기다리지 않고 바로 브로드캐스트한다
        self._persist_async(conn.id, session_id, path, content)
        self._broadcast(
            session_id,
            event(EV_CODE_UPDATE, sessionId=session_id, path=path, content=content, sender=conn.id),
            exclude=conn.id,
        )

    def _handle_cursor(self, conn: Any, message: Dict[str, Any]) -> None:
        session_id = require_str(message, "sessionId")
        if "position" not in message:
            raise InvalidInput("position required")
        user_name = self._require_member(conn, session_id)
        self._broadcast(
            session_id,
            event(EV_CURSOR_UPDATE, userId=conn.id, userName=user_name, position=message["position"]),
            exclude=conn.id,
        )

    def handle_disconnect(self, connection_id: str) -> None:
        """presence에서 연결을 제거하고 남은 멤버에게 알린다. 여러 번 불려도 안전."""
        departure = self.presence.leave(connection_id)
        if departure is None:
            return
        LOGGER.info("%s (%s) left session %s", connection_id, departure.user_name, departure.session_id)
        self._broadcast(
            departure.session_id,
            event(EV_USER_LEFT, userId=connection_id, userName=departure.user_name),
            exclude=connection_id,
        )

    def _require_member(self, conn: Any, session_id: str) -> str:
        membership = self.presence.membership(conn.id)
        if membership is None or membership.session_id != session_id:
            raise NotJoined(conn.id, session_id)
        return membership.user_name

    # ---------- 영속화 ----------
    def _persist_async(self, connection_id: str, session_id: str, path: str, content: str) -> Future:
        lane = self._lanes[zlib.crc32(session_id.encode("utf-8")) % len(self._lanes)]
        future = lane.submit(self._persist, connection_id, session_id, path, content)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _persist(self, connection_id: str, session_id: str, path: str, content: str) -> None:
        try:
            self.files.put(session_id, path, content)
        except Exception as exc:
            LOGGER.warning("edit not persisted: %s:%s from %s: %s", session_id, path, connection_id, exc)
            if self.on_persist_error is not None:
                try:
                    self.on_persist_error(connection_id, session_id, path, exc)
                except Exception:
                    LOGGER.exception("persist error hook failed")

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """진행 중인 저장이 끝날 때까지 대기. 모두 끝났으면 True."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # ---------- 요청/응답 ----------
    def _op_create_session(self, conn: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        return self.registry.create(message.get("name")).to_record()

    def _op_get_session(self, conn: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        return self.registry.get(require_str(message, "sessionId")).to_record()

    def _op_list_sessions(self, conn: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        sessions = self.registry.list(message.get("limit"))
        return {"sessions": [s.to_record() for s in sessions]}

    def _op_delete_session(self, conn: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        session_id = require_str(message, "sessionId")
        evicted = self.registry.delete(session_id)
        notice = event(EV_SESSION_DELETED, sessionId=session_id)
        for member in evicted:
            target = self._get_connection(member.connection_id)
            if target is not None:
                self._safe_send(target, notice)
        return {"sessionId": session_id}

    def _op_put_file(self, conn: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        session_id = require_str(message, "sessionId")
        record = self.files.put(session_id, message.get("path", message.get("filePath")), message.get("content"))
        return {"sessionId": session_id, "path": record.path, "lastModified": record.last_modified}

    def _op_get_file(self, conn: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        session_id = require_str(message, "sessionId")
        path = require_str(message, "path", "filePath")
        return self.files.get(session_id, path).to_payload()

    def _op_list_files(self, conn: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        entries = self.files.list(require_str(message, "sessionId"))
        return {"files": [e.to_payload() for e in entries]}

    # ---------- 헬퍼 ----------
    def _safe_send(self, conn: Any, payload: Dict[str, Any]) -> None:
        if not conn.alive:
            return
        try:
            conn.send(payload)
        except ConnectionError:
            self.unregister(conn)
        except ProtocolError as exc:
            LOGGER.error("protocol encode failed: %s", exc)

    def send_error(self, conn: Any, code: str, **extra: Any) -> None:
        payload = event(EV_ERROR, code=code)
        payload.update(extra)
        self._safe_send(conn, payload)

    def _broadcast(self, session_id: str, payload: Dict[str, Any], *, exclude: Optional[str] = None) -> None:
        for member in self.presence.members_of(session_id):
            if member.connection_id == exclude:
                continue
            target = self._get_connection(member.connection_id)
            if target is None:
                LOGGER.debug("broadcast target gone: %s", member.connection_id)
                continue
            # 한 수신자의 실패가 다른 수신자 전달을 막지 않는다
            self._safe_send(target, payload)

    # ---------- 워치독 ----------
    def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        """죽었거나 오래 조용한 연결을 정리하고 그 id를 반환."""
        now = time.monotonic() if now is None else now
        stale: List[Any] = []
        with self._connections_lock:
            for conn in list(self.connections.values()):
                if not conn.alive:
                    stale.append(conn)
                elif self.heartbeat_timeout and now - conn.last_seen > self.heartbeat_timeout:
                    stale.append(conn)
        for conn in stale:
            LOGGER.info("connection timeout: %s", conn.id)
            self.unregister(conn)
        return [conn.id for conn in stale]

    def _watchdog_loop(self) -> None:
        while not self._stop_event.wait(10):
            self.sweep_idle()

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._watchdog_thread is not None:
            self._watchdog_thread.join(timeout=1.0)
        with self._connections_lock:
            connections = list(self.connections.values())
        for conn in connections:
            self.unregister(conn)
        for lane in self._lanes:
            lane.shutdown(wait=True)


def _req_id(message: Dict[str, Any]) -> Dict[str, Any]:
    if "reqId" in message:
        return {"reqId": message["reqId"]}
    return {}


__all__ = [
    "Connection",
    "SyncRelay",
]
