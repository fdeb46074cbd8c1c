import threading
import uuid
from concurrent.futures import CancelledError

import pytest

from hubwire.messagepack import MessagePackHubProtocol
from hubwire.negotiate import TransportType
from hubwire.party import (
    PartyBase,
    handshake_timeout,
    maximum_receive_message_size,
    stream_buffer_capacity,
)
from hubwire.server import (
    Server,
    allow_origin_patterns,
    hub_factory,
    http_transports,
    insecure_skip_verify,
    new_server,
    simple_hub_factory,
    use_hub,
)


class SingleHub:
    def __init__(self):
        self.id = str(uuid.uuid4())


class FakeConnection:
    def __init__(self, incoming=b"", fail_write=None):
        self._incoming = bytearray(incoming)
        self.written = bytearray()
        self._fail_write = fail_write

    def read(self, size):
        chunk = bytes(self._incoming[:size])
        del self._incoming[:size]
        return chunk

    def write(self, data):
        if self._fail_write is not None:
            raise self._fail_write
        self.written += data
        return len(data)


class BlockingConnection:
    def __init__(self):
        self.release = threading.Event()

    def read(self, size):
        self.release.wait(5)
        return b""

    def write(self, data):
        return len(data)


def test_use_hub_returns_same_instance():
    hub = SingleHub()
    server = new_server(use_hub(hub))
    assert server.new_hub() is hub
    assert server.new_hub().id == server.new_hub().id


def test_simple_hub_factory_creates_new_instances():
    server = new_server(simple_hub_factory(SingleHub()))
    ids = {server.new_hub().id for _ in range(3)}
    assert len(ids) == 3


def test_hub_factory_is_called():
    created = []

    def factory():
        hub = SingleHub()
        created.append(hub)
        return hub

    server = new_server(hub_factory(factory))
    hubs = [server.new_hub(), server.new_hub()]
    assert len(created) == 2
    assert hubs == created


@pytest.mark.parametrize(
    "option",
    [use_hub(SingleHub()), simple_hub_factory(SingleHub()), http_transports("ServerSentEvents")],
)
def test_server_only_options_fail_on_other_parties(option):
    with pytest.raises(ValueError, match="server only"):
        PartyBase().apply_options([option])


def test_missing_hub_raises():
    with pytest.raises(ValueError, match="cannot determine hub type"):
        new_server()


def test_failing_option_raises():
    def bad(party):
        raise RuntimeError("bad option")

    with pytest.raises(RuntimeError, match="bad option"):
        new_server(use_hub(SingleHub()), bad)


def test_stream_buffer_capacity_zero_raises():
    with pytest.raises(ValueError):
        new_server(use_hub(SingleHub()), stream_buffer_capacity(0))


def test_maximum_receive_message_size_zero_raises():
    with pytest.raises(ValueError):
        new_server(use_hub(SingleHub()), maximum_receive_message_size(0))


def test_default_transports():
    server = new_server(use_hub(SingleHub()))
    assert server.available_transports() == [
        TransportType.WEB_SOCKETS,
        TransportType.SERVER_SENT_EVENTS,
    ]


@pytest.mark.parametrize(
    "transports",
    [
        [TransportType.WEB_SOCKETS],
        [TransportType.SERVER_SENT_EVENTS],
        [TransportType.SERVER_SENT_EVENTS, TransportType.WEB_SOCKETS],
    ],
)
def test_http_transports_are_set(transports):
    server = new_server(use_hub(SingleHub()), http_transports(*transports))
    assert server.available_transports() == transports


def test_http_transports_accepts_strings():
    server = new_server(use_hub(SingleHub()), http_transports("WebSockets"))
    assert server.available_transports() == [TransportType.WEB_SOCKETS]


@pytest.mark.parametrize("transport", ["WebTransport", TransportType.WEB_TRANSPORTS])
def test_http_transports_rejects_others(transport):
    with pytest.raises(ValueError, match="unsupported transport"):
        new_server(use_hub(SingleHub()), http_transports(transport))


def test_origin_options():
    server = new_server(
        use_hub(SingleHub()), insecure_skip_verify(True), allow_origin_patterns(["*.example.com"])
    )
    assert server.insecure_skip_verify is True
    assert server.origin_patterns == ["*.example.com"]


def test_allow_reconnect_defaults_true():
    assert new_server(use_hub(SingleHub())).allow_reconnect() is True


def test_parent_event_cancels_server():
    parent = threading.Event()
    server = new_server(parent, use_hub(SingleHub()))
    assert not server.cancelled()
    parent.set()
    assert server.cancelled()


def test_process_handshake_messagepack():
    server = new_server(use_hub(SingleHub()))
    conn = FakeConnection(b'{"protocol": "messagepack","version": 1}\x1e')
    protocol = server.process_handshake(conn)
    assert isinstance(protocol, MessagePackHubProtocol)
    assert bytes(conn.written) == b"{}\x1e"


def test_receive_handshake_request_fields():
    server = new_server(use_hub(SingleHub()))
    request = server.receive_handshake_request(
        FakeConnection(b'{"Protocol":"messagepack","Version":1}\x1e{"type":6}\x1e')
    )
    assert request.protocol == "messagepack"
    assert request.version == 1


def test_unsupported_protocol_sends_error():
    server = new_server(use_hub(SingleHub()))
    conn = FakeConnection(b'{"protocol": "xml","version": 1}\x1e')
    with pytest.raises(ValueError, match="protocol xml not supported"):
        server.process_handshake(conn)
    assert bytes(conn.written) == b'{"error":"protocol xml not supported"}\x1e'


def test_invalid_handshake_json():
    server = new_server(use_hub(SingleHub()))
    with pytest.raises(ValueError):
        server.receive_handshake_request(FakeConnection(b"{not json\x1e"))


def test_handshake_eof():
    server = new_server(use_hub(SingleHub()))
    with pytest.raises(EOFError):
        server.receive_handshake_request(FakeConnection(b'{"protocol":'))


def test_handshake_timeout():
    server = new_server(use_hub(SingleHub()), handshake_timeout(0.1))
    conn = BlockingConnection()
    try:
        with pytest.raises(TimeoutError):
            server.receive_handshake_request(conn)
    finally:
        conn.release.set()


def test_handshake_cancelled():
    server = new_server(use_hub(SingleHub()))
    server.cancel()
    conn = BlockingConnection()
    try:
        with pytest.raises(CancelledError):
            server.receive_handshake_request(conn)
    finally:
        conn.release.set()


def test_handshake_write_error_propagates():
    server = new_server(use_hub(SingleHub()))
    conn = FakeConnection(
        b'{"protocol":"messagepack","version":1}\x1e', fail_write=OSError("broken")
    )
    with pytest.raises(OSError, match="broken"):
        server.process_handshake(conn)


def test_server_class_direct_without_hub():
    server = Server()
    with pytest.raises(ValueError):
        server.new_hub()