#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
PyQt5 CodeShare - Client
------------------------
기능 요약
- 서버(TCP)와 JSON-lines(한 줄에 한 메시지)로 통신
- create-session 또는 세션 id 입력 -> join-session -> get-file 흐름
- 로컬 편집 시 파일 전체 내용을 code-change로 전송 (서버는 last-write-wins)
- 커서 이동 시 cursor-change 전송
- 서버 이벤트(current-users/user-joined/user-left/code-update/cursor-update/
  session-deleted/result/error) 수신 및 적용
"""

import itertools
import json
import socket
import sys
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from PyQt5 import QtCore, QtWidgets


# =====================
# 네트워크 워커
# =====================
class NetWorker(QtCore.QObject):
    connected = QtCore.pyqtSignal()
    disconnected = QtCore.pyqtSignal()
    error = QtCore.pyqtSignal(str)
    eventReceived = QtCore.pyqtSignal(dict)
    status = QtCore.pyqtSignal(str)

    def __init__(self):
        super().__init__()
        self._sock: Optional[socket.socket] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._writer_lock = threading.Lock()
        self._alive = False
        self._req_ids = itertools.count(1)

    def connect_to(self, host: str, port: int, timeout=5.0) -> bool:
        if self._alive:
            return True
        try:
            self.status.emit(f"Connecting {host}:{port} ...")
            s = socket.create_connection((host, port), timeout=timeout)
            s.settimeout(None)
            self._sock = s
            self._alive = True
            self._reader_thread = threading.Thread(target=self._reader_loop, daemon=True)
            self._reader_thread.start()
            self.connected.emit()
            return True
        except OSError as e:
            self._alive = False
            self._sock = None
            self.error.emit(f"Connect failed: {e}")
            return False

    def close(self):
        if not self._alive:
            return
        self._alive = False
        if self._sock:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self._sock.close()
            except OSError:
                pass
        self._sock = None
        self.disconnected.emit()

    def _reader_loop(self):
        buf = b""
        try:
            while self._alive and self._sock:
                chunk = self._sock.recv(65536)
                if not chunk:
                    break
                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        msg = json.loads(line.decode("utf-8"))
                    except ValueError as e:
                        self.error.emit(f"Bad JSON: {e}")
                        continue
                    if isinstance(msg, dict):
                        self.eventReceived.emit(msg)
        except OSError as e:
            if self._alive:
                self.error.emit(f"Reader error: {e}")
        finally:
            self.close()

    def send_json(self, obj: Dict[str, Any]):
        if not self._sock:
            self.error.emit("Not connected")
            return
        data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
        with self._writer_lock:
            try:
                self._sock.sendall(data)
            except OSError as e:
                self.error.emit(f"Send failed: {e}")

    def request(self, op: str, **fields: Any) -> int:
        """요청/응답 op 전송. 응답 매칭용 reqId를 반환."""
        req_id = next(self._req_ids)
        self.send_json({"op": op, "reqId": req_id, **fields})
        return req_id


# =====================
# 커서 보정용 단일 구간 diff
# =====================
@dataclass
class Span:
    pos: int
    removed: int
    inserted: int


def diff_span(old: str, new: str) -> Optional[Span]:
    """old -> new 변화를 하나의 치환 구간으로 요약."""
    if old == new:
        return None
    i = 0
    minlen = min(len(old), len(new))
    while i < minlen and old[i] == new[i]:
        i += 1
    oi = len(old) - 1
    nj = len(new) - 1
    while oi >= i and nj >= i and old[oi] == new[nj]:
        oi -= 1
        nj -= 1
    return Span(pos=i, removed=oi - i + 1, inserted=nj - i + 1)


def cursor_after(old_pos: int, span: Optional[Span]) -> int:
    if span is None or old_pos <= span.pos:
        return old_pos
    if old_pos <= span.pos + span.removed:
        return span.pos + span.inserted
    return old_pos + span.inserted - span.removed


# =====================
# 메인 윈도우
# =====================
class MainWindow(QtWidgets.QMainWindow):
    def __init__(self):
        super().__init__()
        self.setWindowTitle("CodeShare - PyQt Client")
        self.resize(1000, 640)

        self.worker = NetWorker()
        self.thread = QtCore.QThread(self)
        self.worker.moveToThread(self.thread)
        self.thread.start()

        # 상태
        self.session_id: Optional[str] = None
        self.current_path: str = "main.js"
        self.applying_remote: bool = False  # 원격 적용 중에는 textChanged 무시
        self.users: Dict[str, str] = {}
        self.cursors: Dict[str, Any] = {}
        self._pending: Dict[int, str] = {}  # reqId -> op

        self._build_ui()

        self.worker.connected.connect(self.on_connected)
        self.worker.disconnected.connect(self.on_disconnected)
        self.worker.error.connect(self.on_error)
        self.worker.eventReceived.connect(self.on_event)
        self.worker.status.connect(self.set_status)

    # ---------- UI ----------
    def _build_ui(self):
        central = QtWidgets.QWidget()
        layout = QtWidgets.QVBoxLayout(central)

        top = QtWidgets.QHBoxLayout()
        self.ed_host = QtWidgets.QLineEdit("127.0.0.1")
        self.ed_port = QtWidgets.QLineEdit("5055")
        self.ed_name = QtWidgets.QLineEdit("alice")
        self.ed_session = QtWidgets.QLineEdit()
        self.ed_path = QtWidgets.QLineEdit(self.current_path)
        self.btn_create = QtWidgets.QPushButton("New Session")
        self.btn_join = QtWidgets.QPushButton("Join")
        self.btn_open = QtWidgets.QPushButton("Open File")

        for w, ph in [
            (self.ed_host, "host"),
            (self.ed_port, "port"),
            (self.ed_name, "name"),
            (self.ed_session, "sessionId"),
            (self.ed_path, "path"),
        ]:
            w.setPlaceholderText(ph)

        top.addWidget(QtWidgets.QLabel("Host:"))
        top.addWidget(self.ed_host)
        top.addWidget(QtWidgets.QLabel("Port:"))
        top.addWidget(self.ed_port)
        top.addWidget(QtWidgets.QLabel("Name:"))
        top.addWidget(self.ed_name)
        top.addWidget(QtWidgets.QLabel("Session:"))
        top.addWidget(self.ed_session)
        top.addWidget(self.btn_create)
        top.addWidget(self.btn_join)
        top.addWidget(QtWidgets.QLabel("File:"))
        top.addWidget(self.ed_path)
        top.addWidget(self.btn_open)

        body = QtWidgets.QHBoxLayout()
        self.text = QtWidgets.QPlainTextEdit()
        self.text.setPlaceholderText("Join a session to start editing ...")
        self.text.setReadOnly(True)
        self.user_list = QtWidgets.QListWidget()
        self.user_list.setMaximumWidth(220)
        body.addWidget(self.text, 1)
        body.addWidget(self.user_list)

        layout.addLayout(top)
        layout.addLayout(body)
        self.setCentralWidget(central)

        self.status = QtWidgets.QStatusBar()
        self.setStatusBar(self.status)

        self.btn_create.clicked.connect(self.ui_create)
        self.btn_join.clicked.connect(self.ui_join)
        self.btn_open.clicked.connect(self.ui_open)
        self.text.textChanged.connect(self.on_text_changed)
        self.text.cursorPositionChanged.connect(self.on_cursor_moved)

    def set_status(self, s: str):
        self.status.showMessage(s, 5000)

    # ---------- 연결/세션 ----------
    def ensure_connected(self) -> bool:
        host = self.ed_host.text().strip()
        port = int(self.ed_port.text().strip() or 5055)
        return self.worker.connect_to(host, port)

    @QtCore.pyqtSlot()
    def ui_create(self):
        if not self.ensure_connected():
            return
        name = self.ed_session.text().strip() or "Untitled"
        req_id = self.worker.request("create-session", name=name)
        self._pending[req_id] = "create-session"

    @QtCore.pyqtSlot()
    def ui_join(self):
        session_id = self.ed_session.text().strip()
        if not session_id:
            self.set_status("Session id required")
            return
        if self.session_id and self.session_id != session_id:
            # 한 연결은 한 세션에만 참여할 수 있으므로 다시 접속한다
            self.worker.close()
        if not self.ensure_connected():
            return
        self.join(session_id)

    def join(self, session_id: str):
        self.session_id = session_id
        self.users.clear()
        self.cursors.clear()
        self.refresh_users()
        name = self.ed_name.text().strip() or "Anonymous"
        self.worker.send_json({"op": "join-session", "sessionId": session_id, "userName": name})
        self.ui_open()

    @QtCore.pyqtSlot()
    def ui_open(self):
        if not self.session_id:
            return
        self.current_path = self.ed_path.text().strip() or "main.js"
        req_id = self.worker.request("get-file", sessionId=self.session_id, path=self.current_path)
        self._pending[req_id] = "get-file"
        self.set_status(f"Opening '{self.current_path}' ...")

    # ---------- 이벤트 수신 ----------
    @QtCore.pyqtSlot()
    def on_connected(self):
        self.set_status("Connected")

    @QtCore.pyqtSlot()
    def on_disconnected(self):
        self.set_status("Disconnected")
        self.text.setReadOnly(True)

    @QtCore.pyqtSlot(str)
    def on_error(self, err: str):
        self.set_status(f"Error: {err}")

    @QtCore.pyqtSlot(dict)
    def on_event(self, ev: Dict[str, Any]):
        et = ev.get("ev")
        if et == "result":
            self.on_result(self._pending.pop(ev.get("reqId"), ev.get("op")), ev.get("data") or {})

        elif et == "error":
            op = self._pending.pop(ev.get("reqId"), ev.get("op"))
            if op == "get-file" and ev.get("code") == "FILE_NOT_FOUND":
                # 새 파일: 빈 내용으로 시작하고 첫 편집 때 생성된다
                self.apply_remote_content("")
                self.set_status(f"New file '{self.current_path}'")
            else:
                self.set_status(f"Server error: {ev.get('code')} {ev.get('message', '')}")

        elif et == "current-users":
            self.users = {u["userId"]: u["userName"] for u in ev.get("users", [])}
            self.refresh_users()

        elif et == "user-joined":
            self.users[ev.get("userId")] = ev.get("userName")
            self.refresh_users()
            self.set_status(f"{ev.get('userName')} joined")

        elif et == "user-left":
            self.users.pop(ev.get("userId"), None)
            self.cursors.pop(ev.get("userId"), None)
            self.refresh_users()
            self.set_status(f"{ev.get('userName')} left")

        elif et == "code-update":
            if ev.get("path") != self.current_path:
                return
            self.apply_remote_content(ev.get("content", ""))

        elif et == "cursor-update":
            self.cursors[ev.get("userId")] = ev.get("position")
            self.refresh_users()

        elif et == "session-deleted":
            self.session_id = None
            self.users.clear()
            self.refresh_users()
            self.text.setReadOnly(True)
            self.set_status("Session deleted")

    def on_result(self, op: Optional[str], data: Dict[str, Any]):
        if op == "create-session":
            self.ed_session.setText(data.get("id", ""))
            self.set_status(f"Session created: {data.get('id')}")
            self.join(data.get("id", ""))
        elif op == "get-file":
            self.apply_remote_content(data.get("content", ""))
            self.set_status(f"Opened '{self.current_path}'")

    def refresh_users(self):
        self.user_list.clear()
        for uid, name in sorted(self.users.items(), key=lambda kv: kv[1] or ""):
            pos = self.cursors.get(uid)
            label = name if pos is None else f"{name} @ {pos}"
            self.user_list.addItem(label)

    # ---------- 로컬 편집 → 전송 ----------
    @QtCore.pyqtSlot()
    def on_text_changed(self):
        if self.applying_remote or not self.session_id:
            return
        self.worker.send_json({
            "op": "code-change",
            "sessionId": self.session_id,
            "path": self.current_path,
            "content": self.text.toPlainText(),
        })

    @QtCore.pyqtSlot()
    def on_cursor_moved(self):
        if self.applying_remote or not self.session_id:
            return
        cursor = self.text.textCursor()
        position = {"line": cursor.blockNumber(), "column": cursor.positionInBlock()}
        self.worker.send_json({"op": "cursor-change", "sessionId": self.session_id, "position": position})

    # ---------- 원격 적용 ----------
    def apply_remote_content(self, content: str):
        current = self.text.toPlainText()
        new_cursor_pos = cursor_after(self.text.textCursor().position(), diff_span(current, content))
        new_cursor_pos = max(0, min(len(content), new_cursor_pos))

        self.applying_remote = True
        try:
            self.text.blockSignals(True)
            self.text.setPlainText(content)
            cursor = self.text.textCursor()
            cursor.setPosition(new_cursor_pos)
            self.text.setTextCursor(cursor)
        finally:
            self.text.blockSignals(False)
            self.applying_remote = False
        self.text.setReadOnly(False)


# =====================
# 진입점
# =====================
def main():
    app = QtWidgets.QApplication(sys.argv)
    w = MainWindow()
    w.show()
    sys.exit(app.exec_())


if __name__ == "__main__":
    main()
