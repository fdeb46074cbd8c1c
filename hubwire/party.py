"""Settings, options and logging shared by hub servers and clients."""

from __future__ import annotations

import datetime
import inspect
import os
import sys
import threading
from typing import Any, Callable, Iterable, Optional, TextIO, Union

_LEVELS = {"debug": 0, "info": 1, "warn": 2, "error": 3}

_Seconds = Union[float, int, datetime.timedelta]


def _seconds(value: _Seconds) -> float:
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    return float(value)


def _caller(depth: int) -> str:
    frame = inspect.currentframe()
    for _ in range(depth):
        if frame is None:
            break
        frame = frame.f_back
    if frame is None:
        return "unknown"
    return f"{os.path.basename(frame.f_code.co_filename)}:{frame.f_lineno}"


def _logfmt_value(value: Any) -> str:
    text = str(value)
    if text == "" or any(c in text for c in ' ="\n\t'):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'
    return text


class _LogfmtLogger:
    """Writes key/value pairs as one logfmt line per event."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def log(self, *key_vals: Any) -> None:
        if len(key_vals) % 2:
            key_vals = key_vals + ("(MISSING)",)
        pairs = zip(key_vals[::2], key_vals[1::2])
        line = " ".join(f"{_logfmt_value(k)}={_logfmt_value(v)}" for k, v in pairs)
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()


class _LevelLogger:
    """Tags events with a level, drops those below the minimum and never raises."""

    def __init__(self, target: Any, level: str, minimum: str, caller: bool = False) -> None:
        self._emit = getattr(target, "log", target)
        self._level = level
        self._enabled = _LEVELS[level] >= _LEVELS[minimum]
        self._caller = caller

    def log(self, *key_vals: Any) -> Any:
        if not self._enabled:
            return None
        prefix: tuple = ("level", self._level)
        if self._caller:
            prefix += ("caller", _caller(2))
        try:
            return self._emit(*prefix, *key_vals)
        except Exception as exc:  # a broken logger must not break the connection
            print(f"recovering from panic in logger: {exc}")
            return None


def build_info_debug_logger(target: Any, debug: bool) -> tuple[_LevelLogger, _LevelLogger]:
    """Return (info, debug) loggers writing to ``target``.

    Debug events pass only when ``debug`` is true.
    """
    minimum = "debug" if debug else "info"
    return (
        _LevelLogger(target, "info", minimum),
        _LevelLogger(target, "debug", minimum, caller=True),
    )


class PartyBase:
    """State common to a hub server and a hub client."""

    def __init__(
        self,
        parent: Optional[threading.Event] = None,
        info: Any = None,
        debug: Any = None,
    ) -> None:
        self._parent = parent
        self._done = threading.Event()
        self.timeout = 30.0
        self.handshake_timeout = 15.0
        self.keep_alive_interval = 5.0
        self.chan_receive_timeout = 5.0
        self.stream_buffer_capacity = 10
        self.maximum_receive_message_size = 1 << 15
        self.enable_detailed_errors = False
        self.insecure_skip_verify = False
        self.origin_patterns: Optional[list[str]] = None
        default_info, default_debug = build_info_debug_logger(_LogfmtLogger(sys.stderr), False)
        self.info = info if info is not None else default_info
        self.dbg = debug if debug is not None else default_debug

    def cancel(self) -> None:
        """Cancel this party and everything that runs under it."""
        self._done.set()

    def cancelled(self) -> bool:
        """Tell whether this party or its parent was cancelled."""
        return self._done.is_set() or (self._parent is not None and self._parent.is_set())

    def apply_options(self, options: Iterable[Optional[Callable[["PartyBase"], None]]]) -> None:
        """Apply options in order; ``None`` entries are skipped."""
        for option in options:
            if option is not None:
                option(self)


Option = Callable[[PartyBase], None]


def timeout_interval(timeout: _Seconds) -> Option:
    """Time after which the other party counts as gone when nothing arrived."""
    def apply(party: PartyBase) -> None:
        party.timeout = _seconds(timeout)
    return apply


def handshake_timeout(timeout: _Seconds) -> Option:
    """Time within which the other party must send its handshake."""
    def apply(party: PartyBase) -> None:
        party.handshake_timeout = _seconds(timeout)
    return apply


def keep_alive_interval(interval: _Seconds) -> Option:
    """Interval after which a ping is sent when nothing else was."""
    def apply(party: PartyBase) -> None:
        party.keep_alive_interval = _seconds(interval)
    return apply


def stream_buffer_capacity(capacity: int) -> Option:
    """Number of upload stream items buffered before invocations block."""
    def apply(party: PartyBase) -> None:
        if capacity <= 0:
            raise ValueError(f"unsupported StreamBufferCapacity {capacity}")
        party.stream_buffer_capacity = int(capacity)
    return apply


def maximum_receive_message_size(size_in_bytes: int) -> Option:
    """Largest single incoming hub message in bytes."""
    def apply(party: PartyBase) -> None:
        if size_in_bytes <= 0:
            raise ValueError(f"unsupported maximumReceiveMessageSize {size_in_bytes}")
        party.maximum_receive_message_size = int(size_in_bytes)
    return apply


def chan_receive_timeout(timeout: _Seconds) -> Option:
    """Time a hub method gets to take a stream item once the buffer is full."""
    def apply(party: PartyBase) -> None:
        party.chan_receive_timeout = _seconds(timeout)
    return apply


def enable_detailed_errors(enable: bool) -> Option:
    """Send detailed error text when a hub method fails."""
    def apply(party: PartyBase) -> None:
        party.enable_detailed_errors = bool(enable)
    return apply


def logger(target: Any, debug: bool) -> Option:
    """Log info events to ``target``, and debug events too when ``debug`` is true."""
    def apply(party: PartyBase) -> None:
        party.info, party.dbg = build_info_debug_logger(target, debug)
    return apply