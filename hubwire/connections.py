"""Connections that carry hub traffic: raw sockets, server-sent events and WebSockets."""

from __future__ import annotations

import base64
import queue
import secrets
import socket
import threading
import time
from concurrent.futures import CancelledError
from contextlib import suppress
from typing import Any, Callable, Optional

from hubwire.messagepack import TransferMode

_POLL_INTERVAL = 0.05
_SSE_SETTLE = 0.05
_READ_SIZE = 1 << 15


def new_connection_id() -> str:
    """Return a fresh connection id: 16 random bytes in standard base64."""
    return base64.b64encode(secrets.token_bytes(16)).decode("ascii")


class ConnectionBase:
    """Connection id and cancellation shared by all connections."""

    def __init__(self, connection_id: str, parent: Optional[threading.Event] = None) -> None:
        self.connection_id = connection_id
        self._parent = parent
        self._done = threading.Event()

    def cancel(self) -> None:
        """Cancel the connection; pending and later reads and writes fail."""
        self._done.set()

    def cancelled(self) -> bool:
        return self._done.is_set() or (self._parent is not None and self._parent.is_set())

    def _wait_cancelled(self) -> None:
        while not self._done.wait(_POLL_INTERVAL):
            if self._parent is not None and self._parent.is_set():
                return

    def _on_cancel(self, action: Callable[[], Any]) -> None:
        def watch() -> None:
            self._wait_cancelled()
            with suppress(Exception):
                action()

        threading.Thread(target=watch, daemon=True).start()

    def _run(self, op: Callable[[], Any], unblock: Optional[Callable[[], Any]] = None) -> Any:
        """Run a blocking operation, giving up as soon as the connection is cancelled."""
        if self.cancelled():
            raise CancelledError("context canceled")
        results: queue.Queue = queue.Queue(maxsize=1)

        def worker() -> None:
            try:
                results.put((True, op()))
            except BaseException as exc:  # handed to the waiting thread
                results.put((False, exc))

        threading.Thread(target=worker, daemon=True).start()
        while True:
            try:
                ok, value = results.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self.cancelled():
                    if unblock is not None:
                        with suppress(Exception):
                            unblock()
                    raise CancelledError("context canceled") from None
                continue
            if ok:
                return value
            raise value

    def _error(self, exc: Optional[BaseException] = None) -> ConnectionError:
        if exc is None or isinstance(exc, CancelledError):
            reason = "context canceled"
        else:
            reason = str(exc) or type(exc).__name__
        return ConnectionError(f"{type(self).__name__}: {reason}")


class NetConnection(ConnectionBase):
    """A hub connection over a connected stream socket."""

    def __init__(self, sock: socket.socket, parent: Optional[threading.Event] = None) -> None:
        super().__init__(new_connection_id(), parent)
        self._sock = sock
        self._on_cancel(self._close)

    def _shutdown(self) -> None:
        with suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)

    def _close(self) -> None:
        self._shutdown()
        self._sock.close()

    def read(self, size: int = _READ_SIZE) -> bytes:
        try:
            return self._run(lambda: self._sock.recv(size), self._shutdown)
        except Exception as exc:
            raise self._error(exc) from exc

    def write(self, data: bytes) -> int:
        payload = bytes(data)
        try:
            self._run(lambda: self._sock.sendall(payload), self._shutdown)
        except Exception as exc:
            raise self._error(exc) from exc
        return len(payload)


class _Pipe:
    """In-memory pipe whose writes return once the reader has taken all their bytes."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._buffer = bytearray()
        self._consumed = 0
        self._closed = False

    def write(self, data: bytes) -> None:
        with self._cond:
            if self._closed:
                raise BrokenPipeError("pipe closed")
            self._buffer += data
            target = self._consumed + len(self._buffer)
            self._cond.notify_all()
            self._cond.wait_for(lambda: self._closed or self._consumed >= target)
            if self._consumed < target:
                raise BrokenPipeError("pipe closed")

    def read(self, size: int) -> bytes:
        with self._cond:
            self._cond.wait_for(lambda: self._buffer or self._closed)
            chunk = bytes(self._buffer[:size])
            del self._buffer[:size]
            self._consumed += len(chunk)
            self._cond.notify_all()
            return chunk

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class ServerSSEConnection(ConnectionBase):
    """Server side of a server-sent events connection.

    Clients send through POST bodies handed to ``consume_request``; what the hub writes
    becomes event payloads that the HTTP handler takes with ``next_job`` and confirms
    with ``report_result``.
    """

    def __init__(self, connection_id: str, parent: Optional[threading.Event] = None) -> None:
        super().__init__(connection_id, parent)
        self._lock = threading.Lock()
        self._post_writing = False
        self._pipe = _Pipe()
        self._jobs: queue.Queue = queue.Queue(maxsize=1)
        self._results: queue.Queue = queue.Queue(maxsize=1)
        self._jobs_closed = threading.Event()
        self._on_cancel(self._shut_down)

    def _shut_down(self) -> None:
        with self._lock:
            self._jobs_closed.set()
        self._pipe.close()

    def consume_request(self, body: Any) -> int:
        """Feed a POST body to the hub and return the HTTP status for the request."""
        if self.cancelled():
            return 410
        with self._lock:
            if self._post_writing:
                return 409
            self._post_writing = True
        try:
            data = body.read() if hasattr(body, "read") else bytes(body)
            if isinstance(data, str):
                data = data.encode("utf-8")
        except Exception:
            return 400
        finally:
            close = getattr(body, "close", None)
            if callable(close):
                with suppress(Exception):
                    close()
        try:
            self._pipe.write(bytes(data))
        except Exception:
            return 500
        with self._lock:
            self._post_writing = False
        time.sleep(_SSE_SETTLE)
        return 200

    def read(self, size: int = _READ_SIZE) -> bytes:
        try:
            return self._run(lambda: self._pipe.read(size), self._pipe.close)
        except Exception as exc:
            raise self._error(exc) from exc

    def write(self, data: bytes) -> int:
        """Send data as one event and return what the HTTP handler reports as written."""
        if self.cancelled():
            raise self._error()
        text = bytes(data).decode("utf-8", "replace")
        lines = text.rstrip("\n").split("\n")
        job = ("".join(f"data: {line}\n" for line in lines) + "\n").encode("utf-8")
        while True:
            with self._lock:
                if self._jobs_closed.is_set() or self.cancelled():
                    raise self._error()
            try:
                self._jobs.put(job, timeout=_POLL_INTERVAL)
                break
            except queue.Full:
                continue
        while True:
            try:
                written, error = self._results.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self.cancelled():
                    raise self._error() from None
                continue
            if error is not None:
                raise error
            return written

    def next_job(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Return the next event payload, or None once the connection is closed."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                return self._jobs.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                pass
            if self._jobs_closed.is_set() or self.cancelled():
                return None
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"no event within {timeout}s")

    def report_result(self, written: int, error: Optional[BaseException] = None) -> None:
        """Report how the last payload from ``next_job`` was sent."""
        self._results.put((written, error))


class WebSocketConnection(ConnectionBase):
    """A hub connection over a WebSocket with ``send``, ``recv`` and ``close``."""

    def __init__(self, ws: Any, connection_id: str, parent: Optional[threading.Event] = None) -> None:
        super().__init__(connection_id, parent)
        self._ws = ws
        self.transfer_mode = TransferMode.TEXT

    def _fail(self, exc: BaseException) -> ConnectionError:
        error = self._error(exc)
        with suppress(Exception):
            self._ws.close(1000, str(error))
        return error

    def write(self, data: bytes) -> int:
        payload = bytes(data)
        message: Any = payload if self.transfer_mode == TransferMode.BINARY else payload.decode("utf-8")
        try:
            self._run(lambda: self._ws.send(message))
        except Exception as exc:
            raise self._fail(exc) from exc
        return len(payload)

    def read(self, size: Optional[int] = None) -> bytes:
        """Read one message; with ``size`` only its first ``size`` bytes are kept."""
        try:
            message = self._run(self._ws.recv)
        except Exception as exc:
            raise self._fail(exc) from exc
        data = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        return data if size is None else data[:size]