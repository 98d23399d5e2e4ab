import asyncio
import logging
from typing import AsyncIterator, List, Optional, Sequence, Tuple, Union

import h11
from wsproto import ConnectionState, ConnectionType
from wsproto.connection import Connection
from wsproto.events import (
    BytesMessage,
    CloseConnection,
    Event,
    Ping,
    Pong,
    TextMessage,
)
from wsproto.frame_protocol import CloseReason
from wsproto.utilities import LocalProtocolError, generate_accept_token

from .messages import Message, MessageType

"""
framing.py — WebSocket upgrade and message framing over asyncio streams.

Protocol (RFC 6455; h11 for the HTTP request, wsproto for the frames):
- `accept()` reads the HTTP/1.1 upgrade request off an (already secured)
  stream, answers 101 Switching Protocols, and returns a `FramedChannel`.
  Frames the client sent right behind the request are kept for the channel.
- A `FramedChannel` turns the byte stream into whole `Message`s: fragmented
  frames are reassembled, pings are answered with pongs, and a peer's close
  frame is echoed back before the inbound side ends.
- `split()` hands out an inbound `MessageSource` and an outbound `MessageSink`.
  Both halves share one wsproto connection, so they belong to one task.

Errors:
- UpgradeError:       the upgrade never completed (bad request or early EOF).
- ChannelError:       the established channel broke (reset, EOF, idle timeout,
                      write failure).
- ProtocolViolation:  the peer broke RFC 6455 framing rules.
"""

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024
WEBSOCKET_VERSION = b"13"

Headers = Sequence[Tuple[bytes, bytes]]


class UpgradeError(Exception):
    """The WebSocket upgrade handshake failed."""


class ChannelError(Exception):
    """An established channel failed before a clean close."""


class ProtocolViolation(ChannelError):
    def __init__(self, code: int, reason: str) -> None:
        super().__init__(f"protocol violation ({code}): {reason}")
        self.code = code
        self.reason = reason


class BadUpgradeRequest(UpgradeError):
    """A complete request that isn't a usable WebSocket upgrade."""

    def __init__(self, message: str, status_code: int = 400, headers: Headers = ()) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.headers = list(headers)


# -------------------------
# Upgrade handshake
# -------------------------

async def accept(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    idle_timeout: Optional[float] = None,
) -> "FramedChannel":
    """
    Run the server side of the upgrade handshake and return the channel.

    Raises:
        UpgradeError: malformed/unsupported request or the peer went away.
    """
    http = h11.Connection(h11.SERVER)
    try:
        request = await _read_request(reader, http)
        key = upgrade_key(request)
    except h11.RemoteProtocolError as exc:
        await _reject(writer, http, exc.error_status_hint)
        raise UpgradeError(str(exc)) from exc
    except BadUpgradeRequest as exc:
        await _reject(writer, http, exc.status_code, exc.headers)
        raise

    logger.debug("Upgrade request for %r", request.target)
    response = h11.InformationalResponse(
        status_code=101,
        reason=b"Switching Protocols",
        headers=[
            (b"Upgrade", b"WebSocket"),
            (b"Connection", b"Upgrade"),
            (b"Sec-WebSocket-Accept", generate_accept_token(key)),
        ],
    )
    try:
        writer.write(http.send(response))
        await writer.drain()
    except OSError as exc:
        raise UpgradeError(f"write failed: {exc}") from exc

    # Whatever followed the request in the same read is already frame data.
    trailing, _ = http.trailing_data
    ws = Connection(ConnectionType.SERVER, trailing_data=trailing)
    return FramedChannel(reader, writer, ws, idle_timeout=idle_timeout)


async def _read_request(reader: asyncio.StreamReader, http: h11.Connection) -> h11.Request:
    """Feed h11 until the whole request (headers and any body) is in."""
    request = None
    while True:
        event = http.next_event()
        if event is h11.NEED_DATA:
            try:
                data = await reader.read(READ_SIZE)
            except OSError as exc:
                raise UpgradeError(f"read failed: {exc}") from exc
            # b"" tells h11 the peer is done sending.
            http.receive_data(data)
        elif isinstance(event, h11.Request):
            request = event
        elif isinstance(event, h11.EndOfMessage):
            return request
        elif isinstance(event, h11.ConnectionClosed):
            raise UpgradeError("connection closed before upgrade request completed")


def upgrade_key(request: h11.Request) -> bytes:
    """
    Check `request` is a WebSocket upgrade and return its Sec-WebSocket-Key.

    Raises:
        BadUpgradeRequest: with the status (and headers) to answer with.
    """
    if request.method != b"GET":
        raise BadUpgradeRequest("Request method must be GET")

    connection: List[bytes] = []
    upgrade = b""
    version = None
    key = None
    host = None
    for name, value in request.headers:
        if name == b"host":
            host = value
        elif name == b"connection":
            connection.extend(token.strip().lower() for token in value.split(b","))
        elif name == b"upgrade":
            upgrade = value
        elif name == b"sec-websocket-version":
            version = value
        elif name == b"sec-websocket-key":
            key = value

    if b"upgrade" not in connection:
        raise BadUpgradeRequest("Missing header, 'Connection: Upgrade'")
    if version != WEBSOCKET_VERSION:
        raise BadUpgradeRequest(
            "Missing header, 'Sec-WebSocket-Version'",
            status_code=426 if version else 400,
            headers=[(b"Sec-WebSocket-Version", WEBSOCKET_VERSION)],
        )
    if key is None:
        raise BadUpgradeRequest("Missing header, 'Sec-WebSocket-Key'")
    if upgrade.lower() != b"websocket":
        raise BadUpgradeRequest("Missing header, 'Upgrade: websocket'")
    if host is None:
        raise BadUpgradeRequest("Missing header, 'Host'")
    return key


async def _reject(
    writer: asyncio.StreamWriter,
    http: h11.Connection,
    status_code: int,
    headers: Headers = (),
) -> None:
    """Best-effort HTTP error response for a failed upgrade."""
    response = h11.Response(
        status_code=status_code,
        headers=list(headers) + [(b"Content-Length", b"0")],
    )
    try:
        writer.write(http.send(response))
        writer.write(http.send(h11.EndOfMessage()))
        await writer.drain()
    except (h11.LocalProtocolError, OSError) as exc:
        # Either the HTTP exchange is too broken to answer or the peer is gone.
        logger.debug("Could not send upgrade rejection: %s", exc)


# -------------------------
# Established channel
# -------------------------

class FramedChannel:
    """
    One upgraded connection. Inbound events are pulled from wsproto one at a
    time so replies (pong, close) are only generated once the caller has dealt
    with every message that arrived before them.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        ws: Connection,
        idle_timeout: Optional[float] = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._ws = ws
        # Frames that trailed the upgrade request are already queued in `ws`.
        self._events = ws.events()
        self._frame_buf: List[Union[str, bytes]] = []
        self._ended = False
        self.idle_timeout = idle_timeout

    @property
    def ended(self) -> bool:
        """True once the closing handshake has completed from the peer's side."""
        return self._ended

    def split(self) -> Tuple["MessageSource", "MessageSink"]:
        return MessageSource(self), MessageSink(self)

    # -- inbound --

    async def receive(self) -> Optional[Message]:
        """
        Return the next whole message, or None once the peer closed cleanly.

        A CLOSE message is returned once (after our close reply went out);
        every call after that returns None.
        """
        while not self._ended:
            event = next(self._events, None)
            if event is None:
                await self._read()
                continue
            message = await self._handle(event)
            if message is not None:
                return message
        return None

    async def _read(self) -> None:
        try:
            if self.idle_timeout is None:
                data = await self._reader.read(READ_SIZE)
            else:
                data = await asyncio.wait_for(self._reader.read(READ_SIZE), self.idle_timeout)
        except asyncio.TimeoutError:
            raise ChannelError(f"no data for {self.idle_timeout}s") from None
        except OSError as exc:
            raise ChannelError(f"read failed: {exc}") from exc
        self._ws.receive_data(data or None)
        self._events = self._ws.events()

    async def _handle(self, event: Event) -> Optional[Message]:
        if isinstance(event, (TextMessage, BytesMessage)):
            self._frame_buf.append(event.data)
            if not event.message_finished:
                return None
            parts, self._frame_buf = self._frame_buf, []
            if isinstance(event, TextMessage):
                return Message(MessageType.TEXT, "".join(parts).encode("utf-8"))
            return Message(MessageType.BINARY, b"".join(parts))

        if isinstance(event, Ping):
            if self._ws.state is ConnectionState.OPEN:
                await self._send_event(event.response())
            return Message.ping(event.payload)

        if isinstance(event, Pong):
            return Message.pong(event.payload)

        if isinstance(event, CloseConnection):
            return await self._handle_close(event)

        logger.debug("Ignoring unexpected event %r", event)
        return None

    async def _handle_close(self, event: CloseConnection) -> Message:
        if event.code == CloseReason.ABNORMAL_CLOSURE:
            # wsproto's stand-in for "transport went away without a close frame".
            raise ChannelError("connection lost without a close frame")

        if self._ws.state is ConnectionState.OPEN:
            # A frame failed to parse; wsproto reports that as a close event
            # without actually receiving one. Tell the peer and bail out.
            try:
                await self._send_event(event.response())
            except ChannelError:
                pass
            raise ProtocolViolation(event.code, event.reason or "")

        if self._ws.state is ConnectionState.REMOTE_CLOSING:
            await self._send_event(event.response())
        self._ended = True
        return Message.close(event.code, event.reason or "")

    # -- outbound --

    async def send(self, message: Message) -> None:
        if message.type is MessageType.TEXT:
            event: Event = TextMessage(data=message.as_text())
        elif message.type is MessageType.BINARY:
            event = BytesMessage(data=message.payload)
        elif message.type is MessageType.PING:
            event = Ping(payload=message.payload)
        elif message.type is MessageType.PONG:
            event = Pong(payload=message.payload)
        else:
            event = CloseConnection(code=message.close_code(), reason=message.close_reason())
        await self._send_event(event)

    async def _send_event(self, event: Event) -> None:
        try:
            data = self._ws.send(event)
        except LocalProtocolError as exc:
            raise ChannelError(f"cannot send {type(event).__name__}: {exc}") from exc
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as exc:
            raise ChannelError(f"write failed: {exc}") from exc

    def __repr__(self) -> str:
        return f"FramedChannel<{self._ws.state.name}>"


class MessageSource:
    """Inbound half: `async for message in source`."""

    def __init__(self, channel: FramedChannel) -> None:
        self._channel = channel

    def __aiter__(self) -> AsyncIterator[Message]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[Message]:
        while True:
            message = await self._channel.receive()
            if message is None:
                return
            yield message


class MessageSink:
    """Outbound half."""

    def __init__(self, channel: FramedChannel) -> None:
        self._channel = channel

    async def send(self, message: Message) -> None:
        await self._channel.send(message)
