"""MessagePack hub protocol: framing, parsing and encoding of hub messages."""

from __future__ import annotations

import dataclasses
import enum
import logging
import typing
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Union

import msgpack

_log = logging.getLogger(__name__)

_MAX_VARINT_LEN32 = 5


class TransferMode(enum.Enum):
    """How a protocol's frames travel over a transport."""

    TEXT = "Text"
    BINARY = "Binary"


class _RawMessage(bytes):
    """An undecoded MessagePack value taken verbatim from a frame."""


@dataclass
class InvocationMessage:
    """Invocation (type 1) or stream invocation (type 4)."""

    target: str
    arguments: list = field(default_factory=list)
    invocation_id: str = ""
    stream_ids: list = field(default_factory=list)
    type: int = 1


@dataclass
class StreamItemMessage:
    """One item of a stream."""

    invocation_id: str
    item: Any = None
    type: int = 2


@dataclass
class CompletionMessage:
    """Completion of an invocation, with a result or an error."""

    invocation_id: str
    result: Any = None
    error: str = ""
    type: int = 3


@dataclass
class CancelInvocationMessage:
    """Request to cancel a streaming invocation."""

    invocation_id: str
    type: int = 5


@dataclass
class PingMessage:
    """Keep-alive message."""

    type: int = 6


@dataclass
class CloseMessage:
    """Closes the connection, optionally allowing a reconnect."""

    error: str = ""
    allow_reconnect: bool = False
    type: int = 7


HubMessage = Union[
    InvocationMessage,
    StreamItemMessage,
    CompletionMessage,
    CancelInvocationMessage,
    PingMessage,
    CloseMessage,
]


def _encode_uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _decode_uvarint(buffer: bytes, pos: int) -> tuple[int, int] | None:
    """Return (value, bytes used), or None when more bytes are needed."""
    value = 0
    shift = 0
    for used, byte in enumerate(buffer[pos:pos + _MAX_VARINT_LEN32], start=1):
        value |= (byte & 0x7F) << shift
        if byte < 0x80:
            return value, used
        shift += 7
    if len(buffer) - pos >= _MAX_VARINT_LEN32:
        raise ValueError("messagepack frame length too large")
    return None


def _default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    raise TypeError(f"cannot encode {obj!r} as messagepack")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _convert(value: Any, target: Any) -> Any:
    if target is None or target is Any:
        return value
    origin = typing.get_origin(target)
    if origin is not None:
        args = typing.get_args(target)
        if origin is Union:
            if value is None and type(None) in args:
                return None
            for candidate in args:
                if candidate is type(None):
                    continue
                try:
                    return _convert(value, candidate)
                except TypeError:
                    continue
            raise TypeError(f"cannot convert {value!r} to {target!r}")
        if origin in (list, tuple, set):
            if not isinstance(value, (list, tuple)):
                raise TypeError(f"cannot convert {value!r} to {target!r}")
            if origin is tuple and args and args[-1] is not Ellipsis:
                if len(args) != len(value):
                    raise TypeError(f"cannot convert {value!r} to {target!r}")
                return tuple(_convert(v, t) for v, t in zip(value, args))
            item_type = args[0] if args else None
            return origin(_convert(v, item_type) for v in value)
        if origin is dict:
            if not isinstance(value, dict):
                raise TypeError(f"cannot convert {value!r} to {target!r}")
            key_type, val_type = args if args else (None, None)
            return {_convert(k, key_type): _convert(v, val_type) for k, v in value.items()}
        return _convert(value, origin)
    if target is bool:
        if isinstance(value, bool):
            return value
    elif target is int:
        if _is_int(value):
            return value
    elif target is float:
        if _is_int(value) or isinstance(value, float):
            return float(value)
    elif target is str:
        if isinstance(value, str):
            return value
    elif target is bytes:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
    elif isinstance(target, type) and dataclasses.is_dataclass(target):
        if isinstance(value, dict):
            return _build_dataclass(value, target)
    elif isinstance(target, type) and issubclass(target, enum.Enum):
        try:
            return target(value)
        except ValueError as exc:
            raise TypeError(f"cannot convert {value!r} to {target!r}") from exc
    elif isinstance(target, type):
        if target in (list, tuple) and isinstance(value, (list, tuple)):
            return target(value)
        if isinstance(value, target):
            return value
    raise TypeError(f"cannot convert {value!r} to {target!r}")


def _field_type(fld: dataclasses.Field) -> Any:
    # Annotations kept as text are not resolved; such fields take the value as is.
    return None if isinstance(fld.type, str) else fld.type


def _build_dataclass(value: dict, target: type) -> Any:
    by_name = {str(k).lower(): v for k, v in value.items()}
    kwargs = {}
    for fld in dataclasses.fields(target):
        if not fld.init:
            continue
        key = fld.name.lower()
        if key in by_name:
            kwargs[fld.name] = _convert(by_name[key], _field_type(fld))
    try:
        return target(**kwargs)
    except TypeError as exc:
        raise TypeError(f"cannot convert {value!r} to {target!r}: {exc}") from exc


class _FrameDecoder:
    """Reads typed values from one frame, keeping raw slices available."""

    def __init__(self, frame: bytes) -> None:
        self._frame = frame
        self._unpacker = msgpack.Unpacker(raw=False, strict_map_key=False)
        self._unpacker.feed(frame)

    def array_len(self) -> int:
        return self._unpacker.read_array_header()

    def value(self) -> Any:
        return self._unpacker.unpack()

    def int(self, what: str) -> int:
        value = self.value()
        if not _is_int(value):
            raise ValueError(f"invalid {what} {value!r}")
        return value

    def string(self, what: str) -> str:
        value = self.value()
        if not isinstance(value, str):
            raise ValueError(f"invalid {what} {value!r}")
        return value

    def boolean(self, what: str) -> bool:
        value = self.value()
        if not isinstance(value, bool):
            raise ValueError(f"invalid {what} {value!r}")
        return value

    def headers(self) -> None:
        value = self.value()
        if value is not None and not isinstance(value, dict):
            raise ValueError(f"invalid headers {value!r}")

    def raw(self) -> _RawMessage:
        start = self._unpacker.tell()
        self._unpacker.skip()
        return _RawMessage(self._frame[start:self._unpacker.tell()])


class MessagePackHubProtocol:
    """The binary hub protocol with varint length-prefixed frames."""

    def parse_messages(self, data: bytes, remainder: bytearray) -> list[HubMessage]:
        """Parse all complete frames in remainder + data.

        Bytes of an incomplete frame are left in ``remainder`` for the next call.
        """
        buffer = bytes(remainder) + bytes(data)
        pos = 0
        frames = []
        while pos < len(buffer):
            decoded = _decode_uvarint(buffer, pos)
            if decoded is None:
                break
            frame_len, len_len = decoded
            if frame_len == 0:
                pos += len_len
                continue
            end = pos + len_len + frame_len
            if end > len(buffer):
                break
            frames.append(buffer[pos + len_len:end])
            pos = end
        remainder[:] = buffer[pos:]
        messages = []
        for frame in frames:
            message = self._parse_message(frame)
            if message is not None:
                messages.append(message)
        return messages

    def _parse_message(self, frame: bytes) -> HubMessage | None:
        try:
            return self._decode_message(_FrameDecoder(frame))
        except (msgpack.UnpackException, TypeError) as exc:
            raise ValueError(f"invalid messagepack frame: {exc}") from exc

    def _decode_message(self, decoder: _FrameDecoder) -> HubMessage | None:
        msg_len = decoder.array_len()
        msg_type = decoder.int("message type")
        # The ping message carries no headers.
        if msg_type != 6:
            decoder.headers()
        if msg_type in (1, 4):
            if msg_len < 5:
                raise ValueError(f"invalid invocationMessage length {msg_len}")
            raw_id = decoder.value()
            if raw_id is not None and not isinstance(raw_id, str):
                raise ValueError(f"invalid InvocationID {raw_id!r}")
            target = decoder.string("target")
            arguments = [decoder.raw() for _ in range(decoder.array_len())]
            stream_ids = []
            if msg_len == 6:
                stream_ids = [decoder.string("stream id") for _ in range(decoder.array_len())]
            return InvocationMessage(
                target=target,
                arguments=arguments,
                invocation_id=raw_id or "",
                stream_ids=stream_ids,
                type=msg_type,
            )
        if msg_type == 2:
            if msg_len != 4:
                raise ValueError(f"invalid streamItemMessage length {msg_len}")
            invocation_id = decoder.string("InvocationID")
            return StreamItemMessage(invocation_id=invocation_id, item=decoder.raw())
        if msg_type == 3:
            if msg_len < 4:
                raise ValueError(f"invalid completionMessage length {msg_len}")
            completion = CompletionMessage(invocation_id=decoder.string("InvocationID"))
            result_kind = decoder.int("resultKind")
            if result_kind == 1:
                if msg_len < 5:
                    raise ValueError(f"invalid completionMessage length {msg_len}")
                completion.error = decoder.string("error")
            elif result_kind == 3:
                if msg_len < 5:
                    raise ValueError(f"invalid completionMessage length {msg_len}")
                completion.result = decoder.raw()
            elif result_kind != 2:
                raise ValueError(f"invalid resultKind {result_kind}")
            return completion
        if msg_type == 5:
            if msg_len != 3:
                raise ValueError(f"invalid cancelInvocationMessage length {msg_len}")
            return CancelInvocationMessage(invocation_id=decoder.string("InvocationID"))
        if msg_type == 6:
            if msg_len != 1:
                raise ValueError(f"invalid pingMessage length {msg_len}")
            return PingMessage()
        if msg_type == 7:
            if msg_len < 2:
                raise ValueError(f"invalid closeMessage length {msg_len}")
            close = CloseMessage(error=decoder.string("error"))
            if msg_len > 2:
                close.allow_reconnect = decoder.boolean("allowReconnect")
            return close
        return None

    def encode_message(self, message: HubMessage) -> bytes:
        """Encode a message as one length-prefixed frame."""
        packer = msgpack.Packer(use_bin_type=True, default=_default)

        def value(item: Any) -> bytes:
            if isinstance(item, _RawMessage):
                return bytes(item)
            return packer.pack(item)

        def header(msg_len: int, msg_type: int) -> list[bytes]:
            return [packer.pack_array_header(msg_len), packer.pack(msg_type), packer.pack({})]

        if isinstance(message, InvocationMessage):
            parts = header(6, message.type)
            parts.append(packer.pack(message.invocation_id or None))
            parts.append(packer.pack(message.target))
            parts.append(packer.pack_array_header(len(message.arguments)))
            parts.extend(value(arg) for arg in message.arguments)
            parts.append(packer.pack_array_header(len(message.stream_ids)))
            parts.extend(packer.pack(str(sid)) for sid in message.stream_ids)
        elif isinstance(message, StreamItemMessage):
            parts = header(4, message.type)
            parts.append(packer.pack(message.invocation_id))
            parts.append(value(message.item))
        elif isinstance(message, CompletionMessage):
            has_payload = message.result is not None or message.error != ""
            parts = header(5 if has_payload else 4, message.type)
            parts.append(packer.pack(message.invocation_id))
            if message.error:
                parts += [packer.pack(1), packer.pack(message.error)]
            elif message.result is not None:
                parts += [packer.pack(3), value(message.result)]
            else:
                parts.append(packer.pack(2))
        elif isinstance(message, CancelInvocationMessage):
            parts = header(3, message.type)
            parts.append(packer.pack(message.invocation_id))
        elif isinstance(message, PingMessage):
            parts = [packer.pack_array_header(1), packer.pack(6)]
        elif isinstance(message, CloseMessage):
            parts = header(3, message.type)
            parts.append(packer.pack(message.error))
            parts.append(packer.pack(bool(message.allow_reconnect)))
        else:
            raise TypeError(f"unsupported message {message!r}")
        body = b"".join(parts)
        _log.debug("write %r", message)
        return _encode_uvarint(len(body)) + body

    def write_message(self, message: HubMessage, writer: BinaryIO) -> None:
        """Encode a message and write the frame to a binary writer."""
        writer.write(self.encode_message(message))

    def unmarshal_argument(self, src: Any, target_type: Any = None) -> Any:
        """Decode a raw argument and convert it to ``target_type``."""
        if not isinstance(src, (bytes, bytearray)):
            raise TypeError(f"invalid source {src!r} for unmarshal_argument")
        try:
            value = msgpack.unpackb(bytes(src), raw=False, strict_map_key=False)
        except (msgpack.UnpackException, ValueError) as exc:
            raise ValueError(f"invalid messagepack argument: {exc}") from exc
        return _convert(value, target_type)

    def transfer_mode(self) -> TransferMode:
        return TransferMode.BINARY