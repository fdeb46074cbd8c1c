"""Hub building blocks: MessagePack framing, negotiation, connections, streaming, options and handshake."""

__version__ = "0.1.0"