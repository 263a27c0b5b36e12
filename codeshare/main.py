"""CodeShare TCP 서버 진입점."""

from __future__ import annotations

import argparse
import logging
import os
import socket
import threading
from pathlib import Path
from typing import Optional, Sequence

from .files import FileTable
from .presence import PresenceManager
from .protocol import JsonLineFramer, ProtocolError
from .registry import SessionRegistry
from .relay import DEFAULT_OUTBOX_SIZE, Connection, SyncRelay
from .store import BoundedStore, JsonFileStore

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CodeShare - collaborative session server")
    parser.add_argument("--host", default="0.0.0.0", help="서버 바인드 호스트 (default: 0.0.0.0)")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", 5055)),
        help="서버 포트 (default: $PORT 또는 5055)",
    )
    parser.add_argument("--backlog", type=int, default=128, help="listen backlog 크기")
    parser.add_argument("--data-dir", type=Path, default=Path("data"), help="세션/파일 저장 경로")
    parser.add_argument("--store-timeout", type=float, default=5.0, help="저장소 호출 타임아웃(초)")
    parser.add_argument("--heartbeat-timeout", type=int, default=120, help="유휴 연결 타임아웃(초), 0이면 끔")
    parser.add_argument("--outbox-size", type=int, default=DEFAULT_OUTBOX_SIZE, help="연결별 송신 큐 크기")
    parser.add_argument("--log-level", default="INFO", help="로그 레벨 (DEBUG/INFO/...)")
    return parser.parse_args(argv)


def build_relay(args: argparse.Namespace) -> SyncRelay:
    store = BoundedStore(JsonFileStore(args.data_dir), timeout=args.store_timeout)
    presence = PresenceManager()
    registry = SessionRegistry(store, presence)
    return SyncRelay(
        registry=registry,
        files=FileTable(registry),
        presence=presence,
        heartbeat_timeout=args.heartbeat_timeout,
    )


def client_worker(relay: SyncRelay, conn: Connection) -> None:
    framer = JsonLineFramer()
    sock = conn.socket
    try:
        while conn.alive:
            chunk = sock.recv(4096)
            if not chunk:
                break
            try:
                messages = framer.feed(chunk)
            except ProtocolError as exc:
                relay.send_error(conn, "BAD_JSON", message=str(exc))
                break
            for msg in messages:
                if not isinstance(msg, dict):
                    relay.send_error(conn, "BAD_JSON", message="message must be object")
                    continue
                relay.route_message(conn, msg)
    except (ConnectionError, OSError):
        pass
    finally:
        relay.unregister(conn)


def run_server(args: argparse.Namespace) -> None:
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    relay = build_relay(args)

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server_sock:
        server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server_sock.bind((args.host, args.port))
        server_sock.listen(args.backlog)
        LOGGER.info("CodeShare listening on %s:%s (data=%s)", args.host, args.port, args.data_dir)

        try:
            while True:
                sock, addr = server_sock.accept()
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                conn = relay.new_connection(sock, addr, outbox_size=args.outbox_size)
                threading.Thread(target=client_worker, args=(relay, conn), daemon=True).start()
        except KeyboardInterrupt:
            LOGGER.info("KeyboardInterrupt → shutting down")
        finally:
            relay.shutdown()
            relay.registry.store.shutdown()


def main(argv: Optional[Sequence[str]] = None) -> None:
    run_server(parse_args(argv))


if __name__ == "__main__":
    main()
