"""Hub server: configuration, server-only options and the connection handshake."""

from __future__ import annotations

import json
import queue
import threading
import time
from concurrent.futures import CancelledError
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from hubwire.messagepack import MessagePackHubProtocol
from hubwire.negotiate import TransportType
from hubwire.party import PartyBase

_RECORD_SEPARATOR = b"\x1e"
_READ_SIZE = 1 << 15
_POLL_INTERVAL = 0.05
_SUPPORTED_HTTP_TRANSPORTS = (TransportType.WEB_SOCKETS, TransportType.SERVER_SENT_EVENTS)


@dataclass
class _HandshakeRequest:
    protocol: str = ""
    version: int = 0


class Server(PartyBase):
    """A hub server for one type of hub."""

    def __init__(self, parent: Optional[threading.Event] = None) -> None:
        super().__init__(parent)
        self._hub_factory: Optional[Callable[[], Any]] = None
        self.reconnect_allowed = True
        self.transports: Optional[list[TransportType]] = None
        self.protocols: dict[str, Any] = {"messagepack": MessagePackHubProtocol()}

    def new_hub(self) -> Any:
        """Return the hub instance that handles the next invocation."""
        if self._hub_factory is None:
            raise ValueError(
                "cannot determine hub type. Neither use_hub, hub_factory or "
                "simple_hub_factory given as option"
            )
        return self._hub_factory()

    def available_transports(self) -> list[TransportType]:
        """Transports offered to HTTP clients."""
        return list(self.transports or [])

    def allow_reconnect(self) -> bool:
        """Tell whether clients may reconnect after the server closed a connection."""
        return self.reconnect_allowed

    def _run_with_deadline(self, action: Callable[[], Any], timeout: float) -> Any:
        results: queue.Queue = queue.Queue(maxsize=1)

        def worker() -> None:
            try:
                results.put((True, action()))
            except BaseException as exc:  # handed to the waiting thread
                results.put((False, exc))

        threading.Thread(target=worker, daemon=True).start()
        deadline = time.monotonic() + timeout
        while True:
            if self.cancelled():
                raise CancelledError("server cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"handshake not completed within {timeout}s")
            try:
                ok, value = results.get(timeout=min(remaining, _POLL_INTERVAL))
            except queue.Empty:
                continue
            if ok:
                return value
            raise value

    def receive_handshake_request(self, connection: Any) -> _HandshakeRequest:
        """Read the client's handshake request within the handshake timeout."""

        def read_first_frame() -> bytes:
            buffer = bytearray()
            while _RECORD_SEPARATOR not in buffer:
                chunk = connection.read(_READ_SIZE)
                if not chunk:
                    raise EOFError("connection closed before handshake")
                buffer += chunk
            return bytes(buffer.split(_RECORD_SEPARATOR, 1)[0])

        raw = self._run_with_deadline(read_first_frame, self.handshake_timeout)
        self.dbg.log("event", "handshake received", "msg", raw.decode("utf-8", "replace"))
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid handshake request: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"invalid handshake request {data!r}")
        fields = {str(key).lower(): value for key, value in data.items()}
        protocol = fields.get("protocol", "")
        version = fields.get("version", 0)
        if not isinstance(protocol, str):
            raise ValueError(f"invalid handshake protocol {protocol!r}")
        if isinstance(version, bool) or not isinstance(version, (int, float)):
            raise ValueError(f"invalid handshake version {version!r}")
        return _HandshakeRequest(protocol=protocol, version=int(version))

    def send_handshake_response(self, connection: Any, request: _HandshakeRequest) -> Any:
        """Answer the handshake and return the protocol the client asked for.

        An unsupported protocol is answered with an error response and raises ValueError.
        """
        protocol = self.protocols.get(request.protocol)
        if protocol is not None:
            response = b"{}" + _RECORD_SEPARATOR
            try:
                self._run_with_deadline(lambda: connection.write(response), self.handshake_timeout)
            except Exception as exc:
                self.dbg.log("event", "handshake sent", "error", exc)
                raise
            self.dbg.log("event", "handshake sent", "msg", response.decode())
            return protocol
        error = ValueError(f"protocol {request.protocol} not supported")
        self.info.log("event", "protocol requested", "error", error)
        payload = json.dumps({"error": str(error)}, separators=(",", ":")).encode()
        try:
            self._run_with_deadline(
                lambda: connection.write(payload + _RECORD_SEPARATOR), self.handshake_timeout
            )
        except Exception as exc:
            self.dbg.log("event", "handshake sent", "error", exc)
            raise
        raise error

    def process_handshake(self, connection: Any) -> Any:
        """Run the whole handshake on a connection and return the agreed protocol."""
        request = self.receive_handshake_request(connection)
        return self.send_handshake_response(connection, request)


def new_server(*args: Any) -> Server:
    """Create a server from options.

    A leading ``threading.Event`` is taken as the parent whose setting cancels the server.
    """
    parent: Optional[threading.Event] = None
    options: Iterable[Any] = args
    if args and isinstance(args[0], threading.Event):
        parent, options = args[0], args[1:]
    server = Server(parent)
    server.apply_options(options)
    if server.transports is None:
        server.transports = [TransportType.WEB_SOCKETS, TransportType.SERVER_SENT_EVENTS]
    if server._hub_factory is None:
        raise ValueError(
            "cannot determine hub type. Neither use_hub, hub_factory or "
            "simple_hub_factory given as option"
        )
    return server


def _server_only(party: PartyBase, name: str) -> Server:
    if not isinstance(party, Server):
        raise ValueError(f"option {name} is server only")
    return party


def use_hub(hub: Any) -> Callable[[PartyBase], None]:
    """Use the same hub instance for every invocation."""
    def apply(party: PartyBase) -> None:
        _server_only(party, "use_hub")._hub_factory = lambda: hub
    return apply


def hub_factory(factory: Callable[[], Any]) -> Callable[[PartyBase], None]:
    """Call ``factory`` to get the hub instance for every invocation."""
    def apply(party: PartyBase) -> None:
        _server_only(party, "hub_factory")._hub_factory = factory
    return apply


def simple_hub_factory(hub_proto: Any) -> Callable[[PartyBase], None]:
    """Create a fresh hub of the prototype's type for every invocation."""
    hub_type = type(hub_proto)

    def apply(party: PartyBase) -> None:
        _server_only(party, "simple_hub_factory")._hub_factory = hub_type
    return apply


def http_transports(*args: Any) -> Callable[[PartyBase], None]:
    """Offer the given transports to HTTP clients: WebSockets, ServerSentEvents or both."""
    def apply(party: PartyBase) -> None:
        server = _server_only(party, "http_transports")
        for transport in args:
            if transport not in _SUPPORTED_HTTP_TRANSPORTS:
                raise ValueError(f"unsupported transport: {transport}")
            if server.transports is None:
                server.transports = []
            server.transports.append(TransportType(transport))
    return apply


def insecure_skip_verify(skip: bool) -> Callable[[PartyBase], None]:
    """Turn off origin verification when accepting WebSocket connections."""
    def apply(party: PartyBase) -> None:
        party.insecure_skip_verify = bool(skip)
    return apply


def allow_origin_patterns(origins: Iterable[str]) -> Callable[[PartyBase], None]:
    """Host patterns of origins allowed to connect."""
    def apply(party: PartyBase) -> None:
        party.origin_patterns = list(origins)
    return apply