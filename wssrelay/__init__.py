"""
wssrelay — a TLS-terminating WebSocket echo relay.

Each accepted connection goes through the same pipeline:
- TLS handshake with the server identity (PKCS#12 bundle, loaded once).
- HTTP/1.1 upgrade to a WebSocket channel.
- Relay loop: text and binary messages are sent straight back to the client
  that sent them, in order. Ping/pong/close are handled by the framing layer
  and never echoed as data.

Connections are independent; a failure in one only drops that client.

Run with:  python -m wssrelay.run --identity server.p12
"""
__version__ = "0.1.0"

__all__ = ["framing", "identity", "messages", "server", "run"]
