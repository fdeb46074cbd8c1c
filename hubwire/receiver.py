"""Base class for client-side receivers of hub calls."""

from __future__ import annotations

from typing import Any


class Receiver:
    """Keeps the client a receiver belongs to, so its methods can call the server."""

    def __init__(self) -> None:
        self._client: Any = None

    def init(self, client: Any) -> None:
        """Connect the receiver to its client."""
        self._client = client

    def server(self) -> Any:
        """Return the client through which the server can be called."""
        return self._client