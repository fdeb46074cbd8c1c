# hubwire

Building blocks for a real-time hub server: a MessagePack hub protocol with
varint length-prefixed frames, the negotiation response, connection wrappers
for raw sockets, WebSockets and server-sent events, client upload streams and
server result streams, and the option functions that configure a server and
run its connection handshake.

## Installation

```
pip install hubwire
```

For running the tests:

```
pip install "hubwire[test]"
pytest
```

## MessagePack protocol

`hubwire.messagepack` defines the hub messages as dataclasses
(`InvocationMessage`, `StreamItemMessage`, `CompletionMessage`,
`CancelInvocationMessage`, `PingMessage`, `CloseMessage`) and
`MessagePackHubProtocol`, which encodes and parses them.

```python
from hubwire.messagepack import InvocationMessage, MessagePackHubProtocol

protocol = MessagePackHubProtocol()
frame = protocol.encode_message(
    InvocationMessage(type=1, invocation_id="1", target="add2", arguments=[1])
)

remainder = bytearray()
for message in protocol.parse_messages(frame, remainder):
    print(message.target, protocol.unmarshal_argument(message.arguments[0], int))
```

`parse_messages(data, remainder)` takes bytes. Bytes of a frame that is not yet
complete stay in `remainder` and are joined with the data of the next call.
Invalid frames raise `ValueError`.

Arguments, stream items and results of parsed messages are kept as raw
MessagePack bytes. `unmarshal_argument(src, target_type)` decodes them and
converts the value to `target_type`: `int`, `float`, `str`, `bool`, `bytes`,
`list[...]`, `tuple[...]`, `dict[...]`, `Optional[...]`, enums and dataclasses
(fields matched by name, ignoring case). A value that does not fit raises
`TypeError`.

`write_message(message, writer)` writes the encoded frame to a binary writer;
`transfer_mode()` returns `TransferMode.BINARY`.

## Server configuration and handshake

```python
from hubwire.server import new_server, simple_hub_factory, http_transports
from hubwire.party import keep_alive_interval, timeout_interval
from hubwire.negotiate import TransportType

class AddHub:
    def add2(self, i):
        return i + 2

server = new_server(
    simple_hub_factory(AddHub()),
    http_transports(TransportType.WEB_SOCKETS),
    keep_alive_interval(2.0),
    timeout_interval(10.0),
)
print(server.available_transports())
```

A `threading.Event` passed as the first argument of `new_server` is the parent
whose setting cancels the server.

Server-only options: `use_hub`, `hub_factory`, `simple_hub_factory`,
`http_transports`. Options in `hubwire.party` apply to any party:
`timeout_interval`, `handshake_timeout`, `keep_alive_interval`,
`stream_buffer_capacity`, `maximum_receive_message_size`,
`chan_receive_timeout`, `enable_detailed_errors` and `logger`; the server
module also has `insecure_skip_verify` and `allow_origin_patterns`. Times are
seconds or `datetime.timedelta`.

`new_server` raises `ValueError` when an option fails, for example
`stream_buffer_capacity(0)`, a transport other than WebSockets or
ServerSentEvents, a server-only option applied to something that is not a
`Server`, or when no hub is given through `use_hub`, `hub_factory` or
`simple_hub_factory`. Without `http_transports` both WebSockets and
ServerSentEvents are offered.

`Server.process_handshake(connection)` reads the client's handshake request
(JSON ended by `0x1e`) within the handshake timeout, answers it and returns the
protocol object. Only the `messagepack` protocol is known; any other protocol is
answered with an error response and raises `ValueError`.

`logger(target, debug)` sends logfmt-style key/value events to `target`, which
may be a callable or an object with a `log` method; debug events pass only when
`debug` is true, and exceptions raised by the target are caught.

## Other modules

- `hubwire.negotiate` – `TransportType`, `TransferFormatType`,
  `AvailableTransport` and `NegotiateResponse` with `to_dict`, `from_dict` and
  `has_transport`.
- `hubwire.connections` – `NetConnection` (a connected socket),
  `WebSocketConnection` (any object with `send`, `recv` and `close`),
  `ServerSSEConnection` (POST bodies in through `consume_request`, event
  payloads out through `next_job` and `report_result`) and
  `new_connection_id()`. Reads and writes fail with `ConnectionError` once a
  connection is cancelled.
- `hubwire.streaming` – `StreamClient`, which routes a client's stream items
  and completions into bounded channels for hub methods (raising
  `HubChanTimeoutError` when a hub method does not take an item in time), and
  `Streamer`, which sends the items of an iterable as stream items followed by
  a completion and can be stopped with `stop`.
- `hubwire.receiver` – `Receiver` base class that gives receiver methods
  access to their client.

## What this package does not do

There is no message loop that serves a hub on a connection, no dispatch of
invocations to hub methods, no HTTP endpoint or router mapping, no JSON hub
protocol and no hub client. The package provides the pieces such a server or
client is built from: framing and parsing, negotiation data, connection
wrappers, streaming helpers, options and the handshake.