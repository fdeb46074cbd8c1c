"""Negotiation response sent to clients that ask which transports a hub offers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Union


class TransportType(str, enum.Enum):
    """Transports a hub can be reached over."""

    WEB_SOCKETS = "WebSockets"
    WEB_TRANSPORTS = "WebTransports"
    SERVER_SENT_EVENTS = "ServerSentEvents"


class TransferFormatType(str, enum.Enum):
    """Formats a transport can carry."""

    TEXT = "Text"
    BINARY = "Binary"


@dataclass
class AvailableTransport:
    """One transport together with the transfer formats it supports."""

    transport: str
    transfer_formats: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"transport": self.transport, "transferFormats": list(self.transfer_formats)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AvailableTransport:
        return cls(
            transport=str(data["transport"]),
            transfer_formats=[str(fmt) for fmt in data.get("transferFormats") or []],
        )


def _name(value: Union[TransportType, TransferFormatType, str]) -> str:
    return value.value if isinstance(value, enum.Enum) else str(value)


@dataclass
class NegotiateResponse:
    """The body of a negotiate response."""

    connection_id: str
    available_transports: list[AvailableTransport] = field(default_factory=list)
    connection_token: str = ""
    negotiate_version: int = 0

    def has_transport(self, transport_type: Union[TransportType, str]) -> bool:
        """Tell whether the response offers the given transport."""
        wanted = _name(transport_type)
        return any(t.transport == wanted for t in self.available_transports)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; empty token and zero version are left out."""
        data: dict[str, Any] = {}
        if self.connection_token:
            data["connectionToken"] = self.connection_token
        data["connectionId"] = self.connection_id
        if self.negotiate_version:
            data["negotiateVersion"] = self.negotiate_version
        data["availableTransports"] = [t.to_dict() for t in self.available_transports]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NegotiateResponse:
        """Build a response from its JSON form."""
        if not isinstance(data, dict):
            raise TypeError(f"invalid negotiate response {data!r}")
        try:
            connection_id = data["connectionId"]
        except KeyError as exc:
            raise ValueError("negotiate response without connectionId") from exc
        return cls(
            connection_id=str(connection_id),
            available_transports=[
                AvailableTransport.from_dict(t) for t in data.get("availableTransports") or []
            ],
            connection_token=str(data.get("connectionToken") or ""),
            negotiate_version=int(data.get("negotiateVersion") or 0),
        )