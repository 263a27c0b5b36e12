from __future__ import annotations

import time
from typing import Any, Dict, Iterator, List

import pytest

from codeshare.files import FileTable
from codeshare.presence import PresenceManager
from codeshare.registry import SessionRegistry
from codeshare.relay import SyncRelay
from codeshare.store import BoundedStore, JsonFileStore


class FakeConnection:
    """소켓 없이 보낸 이벤트를 기록하는 연결."""

    def __init__(self, cid: str, *, fail_send: bool = False) -> None:
        self.id = cid
        self.alive = True
        self.closed = False
        self.last_seen = time.monotonic()
        self.fail_send = fail_send
        self.sent: List[Dict[str, Any]] = []

    def send(self, payload: Dict[str, Any]) -> None:
        if self.fail_send:
            self.alive = False
            raise ConnectionError("send failed")
        self.sent.append(payload)

    def close(self) -> None:
        self.closed = True
        self.alive = False

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [p for p in self.sent if p.get("ev") == name]


@pytest.fixture
def file_store(tmp_path) -> JsonFileStore:
    return JsonFileStore(tmp_path / "data")


@pytest.fixture
def store(file_store) -> Iterator[BoundedStore]:
    bounded = BoundedStore(file_store, timeout=5.0)
    yield bounded
    bounded.shutdown()


@pytest.fixture
def presence() -> PresenceManager:
    return PresenceManager()


@pytest.fixture
def registry(store, presence) -> SessionRegistry:
    return SessionRegistry(store, presence)


@pytest.fixture
def files(registry) -> FileTable:
    return FileTable(registry)


@pytest.fixture
def persist_errors() -> List[tuple]:
    return []


@pytest.fixture
def relay(registry, files, presence, persist_errors) -> Iterator[SyncRelay]:
    relay = SyncRelay(
        registry=registry,
        files=files,
        presence=presence,
        heartbeat_timeout=0,
        on_persist_error=lambda *args: persist_errors.append(args),
    )
    yield relay
    relay.shutdown()


@pytest.fixture
def connect(relay):
    def _connect(cid: str, **kwargs: Any) -> FakeConnection:
        conn = FakeConnection(cid, **kwargs)
        relay.register(conn)
        return conn

    return _connect
