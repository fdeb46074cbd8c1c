import base64
import io
import socket
import threading
import time

import pytest

from hubwire.connections import (
    NetConnection,
    ServerSSEConnection,
    WebSocketConnection,
    new_connection_id,
)
from hubwire.messagepack import TransferMode


@pytest.fixture
def socket_pair():
    left, right = socket.socketpair()
    yield left, right
    left.close()
    right.close()


def test_connection_id_is_sixteen_random_bytes():
    first = new_connection_id()
    assert len(base64.b64decode(first)) == 16
    assert first != new_connection_id()


def test_set_connection_id(socket_pair):
    conn = NetConnection(socket_pair[0])
    conn_id = conn.connection_id
    conn.connection_id = "Other" + conn_id
    assert conn.connection_id == "Other" + conn_id


def test_net_connection_round_trip(socket_pair):
    client, peer = socket_pair
    conn = NetConnection(client)
    assert conn.write(b"foobar") == 6
    assert peer.recv(1024) == b"foobar"
    peer.sendall(b"no smoke!")
    assert conn.read(1024) == b"no smoke!"
    conn.cancel()


def test_cancel_ends_writes(socket_pair):
    client, peer = socket_pair
    conn = NetConnection(client)

    def drain():
        while True:
            try:
                if not peer.recv(1024):
                    return
            except OSError:
                return

    threading.Thread(target=drain, daemon=True).start()
    threading.Timer(0.2, conn.cancel).start()
    with pytest.raises(ConnectionError):
        while True:
            conn.write(b"foobar")
    assert conn.cancelled()


def test_parent_cancel_ends_reads(socket_pair):
    parent = threading.Event()
    conn = NetConnection(socket_pair[0], parent)
    parent.set()
    assert conn.cancelled()
    with pytest.raises(ConnectionError, match="NetConnection"):
        conn.read()


def test_sse_posted_body_is_read():
    conn = ServerSSEConnection("sse")
    statuses = []
    poster = threading.Thread(target=lambda: statuses.append(conn.consume_request(b"{}\x1e")))
    poster.start()
    assert conn.read(1024) == b"{}\x1e"
    poster.join(1)
    assert statuses == [200]
    conn.cancel()


def test_sse_concurrent_post_conflicts():
    conn = ServerSSEConnection("sse")
    statuses = []
    poster = threading.Thread(target=lambda: statuses.append(conn.consume_request(b"first")))
    poster.start()
    time.sleep(0.2)
    assert conn.consume_request(b"second") == 409
    assert conn.read(1024) == b"first"
    poster.join(1)
    assert statuses == [200]
    conn.cancel()


def test_sse_unreadable_body_is_bad_request():
    class BrokenBody(io.RawIOBase):
        def read(self, *args):
            raise OSError("broken body")

    conn = ServerSSEConnection("sse")
    assert conn.consume_request(BrokenBody()) == 400
    conn.cancel()


def test_sse_write_becomes_event_payload():
    conn = ServerSSEConnection("sse")
    result = {}
    writer = threading.Thread(target=lambda: result.update(n=conn.write(b"a\nb\n")))
    writer.start()
    job = conn.next_job(timeout=1)
    assert job == b"data: a\ndata: b\n\n"
    conn.report_result(len(job), None)
    writer.join(1)
    assert result["n"] == len(job)
    conn.cancel()


def test_sse_reported_error_is_raised_by_write():
    conn = ServerSSEConnection("sse")
    errors = []

    def write():
        try:
            conn.write(b'{"type":6}')
        except OSError as exc:
            errors.append(exc)

    writer = threading.Thread(target=write)
    writer.start()
    assert conn.next_job(timeout=1) == b'data: {"type":6}\n\n'
    conn.report_result(0, OSError("client gone"))
    writer.join(1)
    assert [str(e) for e in errors] == ["client gone"]
    conn.cancel()


def test_sse_next_job_times_out():
    conn = ServerSSEConnection("sse")
    with pytest.raises(TimeoutError):
        conn.next_job(timeout=0.1)
    conn.cancel()


def test_sse_cancelled_connection():
    conn = ServerSSEConnection("sse")
    conn.cancel()
    assert conn.consume_request(b"late") == 410
    with pytest.raises(ConnectionError, match="ServerSSEConnection"):
        conn.write(b"late")
    assert conn.next_job(timeout=1) is None


class FakeWebSocket:
    def __init__(self, incoming=(), fail=False):
        self.sent = []
        self.incoming = list(incoming)
        self.fail = fail
        self.closed_with = None

    def send(self, message):
        if self.fail:
            raise OSError("socket broken")
        self.sent.append(message)

    def recv(self):
        return self.incoming.pop(0)

    def close(self, *args):
        self.closed_with = args


def test_websocket_text_mode_sends_text():
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, "ws")
    assert conn.write(b'{"type":6}\x1e') == 11
    assert ws.sent == ['{"type":6}\x1e']


def test_websocket_binary_mode_sends_bytes():
    ws = FakeWebSocket()
    conn = WebSocketConnection(ws, "ws")
    conn.transfer_mode = TransferMode.BINARY
    conn.write(b"\x02\x91\x06")
    assert ws.sent == [b"\x02\x91\x06"]


def test_websocket_read_returns_message_bytes():
    conn = WebSocketConnection(FakeWebSocket(incoming=["abc", b"abcdef"]), "ws")
    assert conn.read() == b"abc"
    assert conn.read(3) == b"abc"


def test_websocket_failed_send_closes_socket():
    ws = FakeWebSocket(fail=True)
    conn = WebSocketConnection(ws, "ws")
    with pytest.raises(ConnectionError, match="WebSocketConnection"):
        conn.write(b"data")
    assert ws.closed_with is not None
    assert ws.closed_with[0] == 1000


def test_websocket_cancelled_read():
    conn = WebSocketConnection(FakeWebSocket(incoming=["abc"]), "ws")
    conn.cancel()
    with pytest.raises(ConnectionError, match="context canceled"):
        conn.read()