"""Upload streams from a client into hub methods, and item streams out of hub methods."""

from __future__ import annotations

import collections
import logging
import threading
from typing import Any, Callable, Iterable, Iterator, Optional

from hubwire.messagepack import CompletionMessage, InvocationMessage, StreamItemMessage

_log = logging.getLogger(__name__)


class HubChanTimeoutError(TimeoutError):
    """The hub method did not take a streamed item within the receive timeout."""


class _Channel:
    """A bounded, closable queue of stream items of one type."""

    def __init__(self, capacity: int, item_type: Any = None) -> None:
        self.item_type = item_type
        self._capacity = max(1, int(capacity))
        self._items: collections.deque = collections.deque()
        self._closed = False
        self._cond = threading.Condition()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def send(self, item: Any, timeout: Optional[float] = None) -> None:
        """Put an item, waiting at most ``timeout`` seconds for free space."""
        with self._cond:
            has_room = self._cond.wait_for(
                lambda: self._closed or len(self._items) < self._capacity, timeout
            )
            if self._closed:
                raise ValueError("send on closed channel")
            if not has_room:
                raise HubChanTimeoutError(
                    f"timeout ({timeout}s) waiting for hub to receive client streamed value"
                )
            self._items.append(item)
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Any:
        """Take the next item; EOFError once the channel is closed and drained."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise TimeoutError("no stream item received")
            if self._items:
                item = self._items.popleft()
                self._cond.notify_all()
                return item
            raise EOFError("channel closed")

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                yield self.get()
            except EOFError:
                return


class StreamClient:
    """Routes stream items and completions sent by a client to hub method channels."""

    def __init__(self, protocol: Any, chan_receive_timeout: float, stream_buffer_capacity: int) -> None:
        self._lock = threading.Lock()
        self._upstream: dict[str, _Channel] = {}
        self._running: set[str] = set()
        self._protocol = protocol
        self.chan_receive_timeout = chan_receive_timeout
        self.stream_buffer_capacity = stream_buffer_capacity

    def build_channel_argument(
        self, invocation: InvocationMessage, item_type: Any, chan_count: int
    ) -> tuple[Optional[_Channel], bool]:
        """Build the channel for the ``chan_count``-th channel parameter of a hub method.

        ``item_type`` is None for a parameter that is no channel; pass ``typing.Any``
        for a channel that takes items unconverted. Returns (channel, can_stream).
        """
        if item_type is None:
            return None, False
        with self._lock:
            if len(invocation.stream_ids) > chan_count:
                channel = _Channel(self.stream_buffer_capacity, item_type)
                self._upstream[invocation.stream_ids[chan_count]] = channel
                return channel, True
        raise ValueError(
            f"method {invocation.target} has more chan parameters than the client will stream"
        )

    def new_upstream_channel(self, invocation_id: str) -> _Channel:
        """Register a channel that receives items for ``invocation_id`` unconverted."""
        with self._lock:
            channel = _Channel(self.stream_buffer_capacity, Any)
            self._upstream[invocation_id] = channel
            return channel

    def delete_upstream_channel(self, invocation_id: str) -> None:
        """Close and forget the channel of ``invocation_id``, if there is one."""
        with self._lock:
            channel = self._upstream.pop(invocation_id, None)
        if channel is not None:
            channel.close()

    def receive_stream_item(self, stream_item: StreamItemMessage) -> None:
        """Convert a stream item to the channel's type and hand it to the hub method."""
        with self._lock:
            channel = self._upstream.get(stream_item.invocation_id)
            if channel is None:
                raise ValueError(f'unknown stream id "{stream_item.invocation_id}"')
            # A running stream must not be completed with a result.
            self._running.add(stream_item.invocation_id)
        value = self._protocol.unmarshal_argument(stream_item.item, channel.item_type)
        channel.send(value, self.chan_receive_timeout)

    def handles_invocation_id(self, invocation_id: str) -> bool:
        with self._lock:
            return invocation_id in self._upstream

    def receive_completion_item(self, completion: CompletionMessage, invoke_client: Any) -> None:
        """End the upload stream named by a completion, delivering a final result if any."""
        with self._lock:
            channel = self._upstream.get(completion.invocation_id)
            running = completion.invocation_id in self._running
        if channel is None:
            raise ValueError(f"received completion with unknown id {completion.invocation_id}")
        error: Optional[BaseException] = None
        try:
            if completion.error:
                invoke_client.receive_completion_item(completion)
            elif completion.result is not None:
                if running:
                    raise ValueError(
                        f"client side streaming: received completion with result {completion!r}"
                    )
                self.receive_stream_item(
                    StreamItemMessage(invocation_id=completion.invocation_id, item=completion.result)
                )
        except Exception as exc:
            error = exc
        channel.close()
        invoke_client.delete_invocation(completion.invocation_id)
        with self._lock:
            self._upstream.pop(completion.invocation_id, None)
            self._running.discard(completion.invocation_id)
        if error is not None:
            raise error


class Streamer:
    """Sends the items a hub method yields as stream items, then a completion."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._cancels: set[str] = set()
        self._lock = threading.Lock()

    def start(self, invocation_id: str, items: Iterable[Any]) -> threading.Thread:
        """Stream ``items`` in a background thread and return that thread."""
        thread = threading.Thread(target=self._run, args=(invocation_id, items), daemon=True)
        thread.start()
        return thread

    def stop(self, invocation_id: str) -> None:
        """End the stream before its next item is sent."""
        with self._lock:
            self._cancels.add(invocation_id)

    def _run(self, invocation_id: str, items: Iterable[Any]) -> None:
        for item in items:
            with self._lock:
                stopped = invocation_id in self._cancels
                self._cancels.discard(invocation_id)
            if stopped:
                self._send(self._conn.completion, invocation_id, None, "")
                return
            if self._conn.cancelled():
                return
            self._send(self._conn.stream_item, invocation_id, item)
        if not self._conn.cancelled():
            self._send(self._conn.completion, invocation_id, None, "")

    @staticmethod
    def _send(action: Callable[..., Any], *args: Any) -> None:
        try:
            action(*args)
        except Exception as exc:  # the connection reports its own failures
            _log.debug("stream send failed: %s", exc)