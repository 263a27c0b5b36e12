"""세션/파일 레코드 영속화.

``JsonFileStore``는 레코드 하나를 JSON 파일 하나로 저장한다.

    <root>/sessions/<sessionId>.json
    <root>/files/<sessionId>/<sha1(path)>.json

``BoundedStore``는 임의의 저장소 호출에 타임아웃을 걸어 연결 처리 루프가
저장소 때문에 멈추지 않게 한다.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from .errors import StoreUnavailable

LOGGER = logging.getLogger(__name__)

Record = Dict[str, Any]
T = TypeVar("T")

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class SessionStore(Protocol):
    """코어가 의존하는 저장소 계약."""

    def insert_session(self, record: Record) -> bool: ...

    def load_session(self, session_id: str) -> Optional[Record]: ...

    def save_session(self, record: Record) -> None: ...

    def list_sessions(self) -> List[Record]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def load_file(self, session_id: str, path: str) -> Optional[Record]: ...

    def save_file(self, session_id: str, record: Record) -> None: ...

    def list_files(self, session_id: str) -> List[Record]: ...

    def delete_files(self, session_id: str) -> int: ...


class JsonFileStore:
    """파일 시스템 기반 ``SessionStore`` 구현."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"
        self.files_dir = self.root / "files"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.files_dir.mkdir(parents=True, exist_ok=True)
        # 기존 행 갱신과 삭제가 엇갈리지 않게 한다
        self._rows_lock = threading.Lock()

    # ---------- sessions ----------
    def insert_session(self, record: Record) -> bool:
        path = self._session_path(record["id"])
        if path is None:
            raise ValueError(f"unsafe session id: {record['id']!r}")
        tmp_path = self._write_temp(path.parent, record)
        try:
            # link는 대상이 이미 있으면 실패하므로 배타적 생성이 된다
            os.link(tmp_path, path)
        except FileExistsError:
            return False
        finally:
            os.unlink(tmp_path)
        return True

    def load_session(self, session_id: str) -> Optional[Record]:
        path = self._session_path(session_id)
        if path is None:
            return None
        return _read_json(path)

    def save_session(self, record: Record) -> None:
        path = self._session_path(record["id"])
        if path is None:
            raise ValueError(f"unsafe session id: {record['id']!r}")
        with self._rows_lock:
            # 삭제된 세션 행을 되살리지 않는다
            if not path.exists():
                raise FileNotFoundError(f"session gone: {record['id']}")
            self._atomic_write(path, record)

    def list_sessions(self) -> List[Record]:
        records = []
        for path in self.sessions_dir.glob("*.json"):
            record = _read_json(path)
            if record is not None:
                records.append(record)
        return records

    def delete_session(self, session_id: str) -> bool:
        path = self._session_path(session_id)
        if path is None:
            return False
        with self._rows_lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    # ---------- files ----------
    def load_file(self, session_id: str, path: str) -> Optional[Record]:
        file_path = self._file_path(session_id, path)
        if file_path is None:
            return None
        return _read_json(file_path)

    def save_file(self, session_id: str, record: Record) -> None:
        file_path = self._file_path(session_id, record["path"])
        if file_path is None:
            raise ValueError(f"unsafe session id: {session_id!r}")
        with self._rows_lock:
            # 세션 행이 없으면 쓰지 않는다 (삭제 뒤 늦게 도착한 쓰기)
            if not self._session_path(session_id).exists():
                raise FileNotFoundError(f"session gone: {session_id}")
            file_path.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write(file_path, record)

    def list_files(self, session_id: str) -> List[Record]:
        directory = self._file_dir(session_id)
        if directory is None or not directory.exists():
            return []
        records = []
        for path in directory.glob("*.json"):
            record = _read_json(path)
            if record is not None:
                records.append(record)
        return records

    def delete_files(self, session_id: str) -> int:
        directory = self._file_dir(session_id)
        if directory is None or not directory.exists():
            return 0
        with self._rows_lock:
            count = sum(1 for _ in directory.glob("*.json"))
            shutil.rmtree(directory, ignore_errors=True)
        return count

    # ---------- 헬퍼 ----------
    def _session_path(self, session_id: str) -> Optional[Path]:
        if not isinstance(session_id, str) or not _SAFE_ID.match(session_id):
            return None
        return self.sessions_dir / f"{session_id}.json"

    def _file_dir(self, session_id: str) -> Optional[Path]:
        if not isinstance(session_id, str) or not _SAFE_ID.match(session_id):
            return None
        return self.files_dir / session_id

    def _file_path(self, session_id: str, path: str) -> Optional[Path]:
        directory = self._file_dir(session_id)
        if directory is None:
            return None
        digest = hashlib.sha1(path.encode("utf-8")).hexdigest()
        return directory / f"{digest}.json"

    def _write_temp(self, directory: Path, data: Record) -> str:
        tmp_fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as fp:
                json.dump(data, fp, ensure_ascii=False)
        except BaseException:
            os.unlink(tmp_path)
            raise
        return tmp_path

    def _atomic_write(self, path: Path, data: Record) -> None:
        tmp_path = self._write_temp(path.parent, data)
        try:
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)


def _read_json(path: Path) -> Optional[Record]:
    try:
        with path.open("r", encoding="utf-8") as fp:
            return json.load(fp)
    except FileNotFoundError:
        return None


class BoundedStore:
    """저장소 호출을 워커 풀에서 실행하고 ``timeout`` 초 안에 끝나지 않으면
    ``StoreUnavailable``을 던진다. 저장소 계약과 같은 메서드를 노출한다."""

    def __init__(self, store: SessionStore, *, timeout: float = 5.0, max_workers: int = 8) -> None:
        self.store = store
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="store")

    def call(self, fn: Callable[..., T], *args: Any) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            future.cancel()
            LOGGER.error("store call timed out: %s (%.2fs)", fn.__name__, self.timeout)
            raise StoreUnavailable(f"store timeout: {fn.__name__}") from exc
        except (OSError, ValueError) as exc:
            LOGGER.error("store call failed: %s: %s", fn.__name__, exc)
            raise StoreUnavailable(f"store error: {exc}") from exc

    def insert_session(self, record: Record) -> bool:
        return self.call(self.store.insert_session, record)

    def load_session(self, session_id: str) -> Optional[Record]:
        return self.call(self.store.load_session, session_id)

    def save_session(self, record: Record) -> None:
        self.call(self.store.save_session, record)

    def list_sessions(self) -> List[Record]:
        return self.call(self.store.list_sessions)

    def delete_session(self, session_id: str) -> bool:
        return self.call(self.store.delete_session, session_id)

    def load_file(self, session_id: str, path: str) -> Optional[Record]:
        return self.call(self.store.load_file, session_id, path)

    def save_file(self, session_id: str, record: Record) -> None:
        self.call(self.store.save_file, session_id, record)

    def list_files(self, session_id: str) -> List[Record]:
        return self.call(self.store.list_files, session_id)

    def delete_files(self, session_id: str) -> int:
        return self.call(self.store.delete_files, session_id)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


__all__ = [
    "BoundedStore",
    "JsonFileStore",
    "SessionStore",
]
