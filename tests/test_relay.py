import pytest

from codeshare.errors import StoreUnavailable


@pytest.fixture
def session_id(registry):
    return registry.create("Demo").id


def join(relay, conn, session_id, name):
    relay.route_message(conn, {"op": "join-session", "sessionId": session_id, "userName": name})


def test_join_notifies_others_and_lists_current_users(relay, connect, session_id):
    a = connect("A")
    b = connect("B")
    join(relay, a, session_id, "alice")
    join(relay, b, session_id, "bob")

    assert a.events("current-users")[0]["users"] == []
    assert b.events("current-users")[0]["users"] == [{"userId": "A", "userName": "alice"}]
    assert a.events("user-joined") == [{"ev": "user-joined", "userId": "B", "userName": "bob"}]
    assert b.events("user-joined") == []


def test_join_without_name_is_anonymous(relay, connect, session_id):
    a = connect("A")
    b = connect("B")
    join(relay, a, session_id, "alice")
    relay.route_message(b, {"op": "join-session", "sessionId": session_id})
    assert a.events("user-joined")[0]["userName"] == "Anonymous"


def test_join_unknown_session_is_dropped(relay, connect, presence):
    a = connect("A")
    join(relay, a, "deadbeef", "alice")
    assert a.sent == []
    assert presence.membership("A") is None
    assert a.alive


def test_join_second_session_is_dropped(relay, connect, registry, session_id, presence):
    other = registry.create("Other").id
    a = connect("A")
    join(relay, a, session_id, "alice")
    join(relay, a, other, "alice")
    assert presence.membership("A").session_id == session_id
    assert len(a.events("current-users")) == 1


def test_code_change_reaches_others_but_not_sender(relay, connect, session_id, files):
    a = connect("A")
    b = connect("B")
    join(relay, a, session_id, "alice")
    join(relay, b, session_id, "bob")

    relay.route_message(
        a, {"op": "code-change", "sessionId": session_id, "path": "main.js", "content": "let x = 1"}
    )

    assert b.events("code-update") == [
        {"ev": "code-update", "sessionId": session_id, "path": "main.js", "content": "let x = 1", "sender": "A"}
    ]
    assert a.events("code-update") == []
    assert relay.flush(timeout=5)
    assert files.get(session_id, "main.js").content == "let x = 1"


def test_code_change_accepts_file_path_alias(relay, connect, session_id, files):
    a = connect("A")
    join(relay, a, session_id, "alice")
    relay.route_message(a, {"op": "code-change", "sessionId": session_id, "filePath": "a.py", "content": ""})
    assert relay.flush(timeout=5)
    assert files.get(session_id, "a.py").content == ""


def test_edits_from_one_sender_persist_in_order(relay, connect, session_id, files):
    a = connect("A")
    join(relay, a, session_id, "alice")
    for i in range(20):
        relay.route_message(
            a, {"op": "code-change", "sessionId": session_id, "path": "main.js", "content": f"v{i}"}
        )
    assert relay.flush(timeout=5)
    assert files.get(session_id, "main.js").content == "v19"


def test_code_change_broadcasts_even_when_persistence_fails(
    relay, connect, session_id, files, monkeypatch, persist_errors
):
    a = connect("A")
    b = connect("B")
    join(relay, a, session_id, "alice")
    join(relay, b, session_id, "bob")

    def broken_put(*args):
        raise StoreUnavailable("store timeout")

    monkeypatch.setattr(files, "put", broken_put)
    relay.route_message(a, {"op": "code-change", "sessionId": session_id, "path": "main.js", "content": "x"})

    assert len(b.events("code-update")) == 1
    assert relay.flush(timeout=5)
    assert len(persist_errors) == 1
    connection_id, sid, path, exc = persist_errors[0]
    assert (connection_id, sid, path) == ("A", session_id, "main.js")
    assert isinstance(exc, StoreUnavailable)
    assert a.events("error") == []


def test_code_change_from_non_member_is_dropped(relay, connect, session_id, files):
    a = connect("A")
    b = connect("B")
    join(relay, b, session_id, "bob")
    relay.route_message(a, {"op": "code-change", "sessionId": session_id, "path": "main.js", "content": "x"})
    assert relay.flush(timeout=5)
    assert b.events("code-update") == []
    assert files.list(session_id) == []


def test_cursor_change_carries_user_name(relay, connect, session_id, files):
    a = connect("A")
    b = connect("B")
    join(relay, a, session_id, "alice")
    join(relay, b, session_id, "bob")

    position = {"line": 3, "column": 7}
    relay.route_message(a, {"op": "cursor-change", "sessionId": session_id, "position": position})

    assert b.events("cursor-update") == [
        {"ev": "cursor-update", "userId": "A", "userName": "alice", "position": position}
    ]
    assert a.events("cursor-update") == []
    assert files.list(session_id) == []


def test_disconnect_notifies_remaining_members(relay, connect, session_id, presence):
    a = connect("A")
    b = connect("B")
    join(relay, a, session_id, "alice")
    join(relay, b, session_id, "bob")

    relay.unregister(a)

    assert b.events("user-left") == [{"ev": "user-left", "userId": "A", "userName": "alice"}]
    assert presence.membership("A") is None
    assert a.closed

    relay.unregister(a)
    assert len(b.events("user-left")) == 1


def test_disconnect_without_join_is_noop(relay, connect, session_id):
    a = connect("A")
    b = connect("B")
    join(relay, b, session_id, "bob")
    sent_before = list(b.sent)

    relay.handle_disconnect("A")
    relay.unregister(a)

    assert b.sent == sent_before


def test_failing_member_does_not_block_others(relay, connect, session_id, presence):
    a = connect("A")
    slow = connect("S", fail_send=False)
    c = connect("C")
    for conn, name in [(a, "alice"), (slow, "sam"), (c, "carol")]:
        join(relay, conn, session_id, name)
    slow.fail_send = True

    relay.route_message(a, {"op": "code-change", "sessionId": session_id, "path": "f", "content": "1"})

    assert len(c.events("code-update")) == 1
    assert presence.membership("S") is None
    assert "S" not in relay.connections
    assert len(a.events("user-left")) == 1


def test_request_ops_roundtrip(relay, connect):
    a = connect("A")
    relay.route_message(a, {"op": "create-session", "name": "Demo", "reqId": 1})
    created = a.events("result")[-1]
    assert created["reqId"] == 1
    sid = created["data"]["id"]

    relay.route_message(a, {"op": "put-file", "sessionId": sid, "path": "main.js", "content": "console.log(1)"})
    relay.route_message(a, {"op": "get-file", "sessionId": sid, "path": "main.js", "reqId": 2})
    assert a.events("result")[-1]["data"]["content"] == "console.log(1)"

    relay.route_message(a, {"op": "list-files", "sessionId": sid})
    assert [f["path"] for f in a.events("result")[-1]["data"]["files"]] == ["main.js"]

    relay.route_message(a, {"op": "get-session", "sessionId": sid})
    assert a.events("result")[-1]["data"]["name"] == "Demo"

    relay.route_message(a, {"op": "list-sessions", "limit": 5})
    assert [s["id"] for s in a.events("result")[-1]["data"]["sessions"]] == [sid]


@pytest.mark.parametrize(
    "message,code",
    [
        ({"op": "get-session", "sessionId": "deadbeef"}, "SESSION_NOT_FOUND"),
        ({"op": "delete-session", "sessionId": "deadbeef"}, "SESSION_NOT_FOUND"),
        ({"op": "list-files", "sessionId": "deadbeef"}, "SESSION_NOT_FOUND"),
        ({"op": "put-file", "sessionId": "deadbeef", "path": "a", "content": "b"}, "SESSION_NOT_FOUND"),
        ({"op": "create-session"}, "INVALID_INPUT"),
        ({"op": "list-sessions", "limit": 0}, "INVALID_INPUT"),
        ({"op": "get-session"}, "INVALID_INPUT"),
        ({"op": "frobnicate"}, "UNKNOWN_OP"),
        ({}, "INVALID_INPUT"),
    ],
)
def test_request_errors(relay, connect, message, code):
    a = connect("A")
    relay.route_message(a, dict(message, reqId=7))
    errors = a.events("error")
    assert errors[-1]["code"] == code
    if message:
        assert errors[-1]["reqId"] == 7


def test_get_missing_file_error(relay, connect, session_id):
    a = connect("A")
    relay.route_message(a, {"op": "get-file", "sessionId": session_id, "path": "nope"})
    assert a.events("error")[-1]["code"] == "FILE_NOT_FOUND"


def test_store_unavailable_surfaces_as_server_error(relay, connect, registry, monkeypatch):
    a = connect("A")

    def broken(*args):
        raise StoreUnavailable("store timeout")

    monkeypatch.setattr(registry.store, "list_sessions", broken)
    relay.route_message(a, {"op": "list-sessions"})
    assert a.events("error")[-1]["code"] == "SERVER_ERROR"


def test_delete_session_evicts_members(relay, connect, session_id, presence):
    a = connect("A")
    b = connect("B")
    join(relay, a, session_id, "alice")
    relay.route_message(b, {"op": "delete-session", "sessionId": session_id})

    assert b.events("result")[-1]["data"] == {"sessionId": session_id}
    assert a.events("session-deleted") == [{"ev": "session-deleted", "sessionId": session_id}]
    assert presence.members_of(session_id) == frozenset()

    join(relay, b, session_id, "bob")
    assert b.events("current-users") == []


def test_ping(relay, connect):
    a = connect("A")
    relay.route_message(a, {"op": "ping", "reqId": "p"})
    pong = a.events("pong")[0]
    assert pong["reqId"] == "p"
    assert pong["timestamp"] > 0


def test_sweep_idle_closes_stale_connections(relay, connect, session_id):
    relay.heartbeat_timeout = 30
    a = connect("A")
    b = connect("B")
    join(relay, a, session_id, "alice")
    join(relay, b, session_id, "bob")
    b.last_seen += 1000

    swept = relay.sweep_idle(now=a.last_seen + 60)

    assert swept == ["A"]
    assert a.closed
    assert b.events("user-left")[0]["userName"] == "alice"


def test_join_racing_delete_gets_no_snapshot(relay, connect, session_id, presence, monkeypatch):
    a = connect("A")
    join(relay, a, session_id, "alice")
    b = connect("B")
    original_join = presence.join

    def join_then_close(sid, cid, name):
        others = original_join(sid, cid, name)
        presence.close_session(sid)
        return others

    monkeypatch.setattr(presence, "join", join_then_close)
    join(relay, b, session_id, "bob")

    assert b.events("current-users") == []
    assert a.events("user-joined") == []
    assert presence.membership("B") is None


def test_join_into_vanished_session_is_rolled_back(relay, connect, session_id, presence, registry, monkeypatch):
    a = connect("A")
    original_join = presence.join

    def join_then_drop_row(sid, cid, name):
        others = original_join(sid, cid, name)
        registry.store.delete_session(sid)  # 닫힘 표시 없이 행만 사라진 상태
        return others

    monkeypatch.setattr(presence, "join", join_then_drop_row)
    join(relay, a, session_id, "alice")

    assert a.sent == []
    assert presence.membership("A") is None
    assert presence.members_of(session_id) == frozenset()
