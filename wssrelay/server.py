import asyncio
import logging
import socket
import ssl
from typing import AsyncIterable, Awaitable, List, Optional, Set, Tuple

from . import framing
from .framing import ChannelError, MessageSink, UpgradeError
from .identity import ServerIdentity
from .messages import Message

"""
server.py — the connection pipeline: accept → TLS → upgrade → relay.

What happens per connection:
- `RelayServer` owns the listening socket and accepts raw TCP connections in
  its own loop; each one gets its own task, so a slow or broken client never
  holds up the next accept.
- `secure_accept()` wraps the accepted socket in TLS. Nothing reads from the
  socket before the TLS layer owns it.
- `framing.accept()` upgrades the secure stream to a WebSocket channel.
- `relay()` echoes text/binary messages back to the same channel, in order,
  until the peer closes or something breaks.

Nothing here is shared between connections except the listener and the
read-only TLS context. Messages only ever go back to the connection they came
from; there is no fan-out.
"""

logger = logging.getLogger(__name__)

BACKLOG = 100


class TlsHandshakeError(Exception):
    """The TLS handshake with a client failed."""


# -------------------------
# Pipeline stages
# -------------------------

async def secure_accept(
    sock: socket.socket,
    ssl_context: ssl.SSLContext,
    timeout: Optional[float] = None,
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    Server-side TLS handshake on an accepted socket; returns the encrypted
    reader/writer pair.

    `timeout` is handed to asyncio's own handshake timer (None = asyncio's
    default).
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    try:
        transport, _ = await loop.connect_accepted_socket(
            lambda: protocol, sock, ssl=ssl_context, ssl_handshake_timeout=timeout
        )
    except (OSError, asyncio.TimeoutError) as exc:
        # ssl.SSLError and ConnectionResetError are both OSErrors.
        raise TlsHandshakeError(str(exc) or type(exc).__name__) from exc
    return reader, asyncio.StreamWriter(transport, protocol, reader, loop)


def should_forward(message: Message) -> bool:
    """Only data messages are echoed; control frames belong to the framing layer."""
    return message.is_text or message.is_binary


async def relay(source: AsyncIterable[Message], sink: MessageSink) -> int:
    """
    Forward every text/binary message from `source` to `sink`, in order.

    Returns the number of forwarded messages once `source` ends cleanly.
    Errors from either side propagate; nothing is retried.
    """
    forwarded = 0
    async for message in source:
        if not should_forward(message):
            logger.debug("Not forwarding %r", message)
            continue
        await sink.send(message)
        forwarded += 1
    return forwarded


# -------------------------
# Supervisor
# -------------------------

class RelayServer:
    """
    Accepts connections on host:port and runs the pipeline for each one.

      - TLS identity is loaded once (by the caller) and shared read-only.
      - Per-connection failures are logged and never reach the accept loop.
      - Timeouts are off unless configured.
    """

    def __init__(
        self,
        host: str,
        port: int,
        identity: ServerIdentity,
        handshake_timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.identity = identity
        self.ssl_context = identity.ssl_context()
        self.handshake_timeout = handshake_timeout
        self.idle_timeout = idle_timeout
        self._sock: Optional[socket.socket] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._conn_tasks: Set[asyncio.Task] = set()

    @property
    def sockets(self) -> List[socket.socket]:
        if self._sock is None:
            return []
        return [self._sock]

    async def start(self) -> None:
        """Bind the listener. OSError here (e.g. address in use) is fatal."""
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(
            self.host, self.port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
        family, _, _, _, sockaddr = infos[0]
        sock = socket.create_server(sockaddr, family=family, backlog=BACKLOG)
        sock.setblocking(False)
        self._sock = sock
        self._accept_task = asyncio.create_task(self._accept_loop(sock))
        logger.info("Listening on: %s", sock.getsockname())

    async def serve_forever(self) -> None:
        """Bind (if needed) and accept until the listener fails or we're cancelled."""
        if self._sock is None:
            await self.start()
        try:
            await self._accept_task
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop accepting, drop every live connection and release the socket."""
        if self._accept_task is not None:
            self._accept_task.cancel()
            await asyncio.gather(self._accept_task, return_exceptions=True)
            self._accept_task = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        tasks = list(self._conn_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _accept_loop(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                conn, peer = await loop.sock_accept(sock)
            except ConnectionAbortedError as exc:
                # The client gave up before we got to it; the listener is fine.
                logger.debug("Accept aborted: %s", exc)
                continue
            task = asyncio.create_task(self.handle_conn(conn, peer))
            self._conn_tasks.add(task)
            task.add_done_callback(self._conn_tasks.discard)

    async def handle_conn(self, sock: socket.socket, peer) -> None:
        """Per-connection pipeline: handshake, upgrade, relay, close."""
        logger.debug("New connection from %s", peer)
        writer: Optional[asyncio.StreamWriter] = None
        handed_off = False

        async def handshake() -> framing.FramedChannel:
            nonlocal writer, handed_off
            # From here on the transport owns the socket, even if TLS fails.
            handed_off = True
            reader, writer = await secure_accept(sock, self.ssl_context, self.handshake_timeout)
            return await framing.accept(reader, writer, idle_timeout=self.idle_timeout)

        try:
            channel = await self._establish(handshake())
            logger.info("New WebSocket connection from %s", peer)

            source, sink = channel.split()
            forwarded = await relay(source, sink)
            logger.info("Connection from %s closed after %d messages", peer, forwarded)
        except TlsHandshakeError as exc:
            logger.warning("TLS handshake with %s failed: %s", peer, exc)
        except UpgradeError as exc:
            logger.warning("WebSocket handshake with %s failed: %s", peer, exc)
        except ChannelError as exc:
            logger.warning("Failed to forward messages for %s: %s", peer, exc)
        except OSError as exc:
            logger.warning("Connection error with %s: %s", peer, exc)
        except Exception:
            logger.exception("Unexpected error handling %s", peer)
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError as exc:
                    logger.debug("Error while closing %s: %s", peer, exc)
            elif not handed_off:
                sock.close()

    async def _establish(self, handshake: Awaitable[framing.FramedChannel]) -> framing.FramedChannel:
        """TLS + upgrade, bounded together by handshake_timeout when set."""
        if self.handshake_timeout is None:
            return await handshake
        try:
            return await asyncio.wait_for(handshake, self.handshake_timeout)
        except asyncio.TimeoutError:
            raise UpgradeError(f"handshake not completed within {self.handshake_timeout}s") from None
