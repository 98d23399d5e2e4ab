import asyncio
import ssl
from collections import deque
from typing import Deque, List, Union

import pytest
import pytest_asyncio
from wsproto import ConnectionType, WSConnection
from wsproto.events import (
    AcceptConnection,
    BytesMessage,
    CloseConnection,
    Event,
    Ping,
    Request,
    TextMessage,
)

from wssrelay.identity import ServerIdentity, generate_identity
from wssrelay.server import RelayServer

IDENTITY_PASSWORD = "correct horse"


# -------------------------
# Identity fixtures
# -------------------------

@pytest.fixture(scope="session")
def identity_bundle() -> bytes:
    # 2048 bits keeps the session setup quick; the server doesn't care.
    return generate_identity(password=IDENTITY_PASSWORD, key_size=2048)


@pytest.fixture(scope="session")
def identity(identity_bundle) -> ServerIdentity:
    return ServerIdentity.from_pkcs12(identity_bundle, IDENTITY_PASSWORD)


@pytest.fixture
def identity_file(tmp_path, identity_bundle):
    path = tmp_path / "server.p12"
    path.write_bytes(identity_bundle)
    return str(path)


# -------------------------
# Server fixtures
# -------------------------

def server_port(server: RelayServer) -> int:
    return server.sockets[0].getsockname()[1]


@pytest_asyncio.fixture
async def relay_server(identity):
    server = RelayServer("127.0.0.1", 0, identity)
    await server.start()
    yield server
    await server.close()


def client_ssl_context() -> ssl.SSLContext:
    # Self-signed test identity: skip verification, tests compare the cert directly.
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


# -------------------------
# Test client
# -------------------------

class WsClient:
    """Minimal wsproto client over a TLS asyncio stream."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.ws = WSConnection(ConnectionType.CLIENT)
        self._pending: Deque[Event] = deque()
        self._buf: List[Union[str, bytes]] = []

    @classmethod
    async def connect(cls, port: int, target: str = "/") -> "WsClient":
        reader, writer = await asyncio.open_connection("127.0.0.1", port, ssl=client_ssl_context())
        client = cls(reader, writer)
        await client.send(Request(host="localhost", target=target))
        event = await client.next_event()
        assert isinstance(event, AcceptConnection), event
        return client

    async def write_raw(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def send(self, event: Event) -> None:
        await self.write_raw(self.ws.send(event))

    async def send_text(self, data: str) -> None:
        await self.send(TextMessage(data=data))

    async def send_bytes(self, data: bytes) -> None:
        await self.send(BytesMessage(data=data))

    async def ping(self, payload: bytes = b"") -> None:
        await self.send(Ping(payload=payload))

    async def close(self, code: int = 1000) -> None:
        await self.send(CloseConnection(code=code))

    async def next_event(self, timeout: float = 5.0) -> Event:
        while not self._pending:
            data = await asyncio.wait_for(self.reader.read(65536), timeout)
            self.ws.receive_data(data or None)
            self._pending.extend(self.ws.events())
            if not data and not self._pending:
                raise EOFError("server closed the connection")
        return self._pending.popleft()

    async def recv(self, timeout: float = 5.0):
        """
        Next whole data message (str for text, bytes for binary). Control
        events (Pong, CloseConnection, ...) are returned unchanged.
        """
        while True:
            event = await self.next_event(timeout)
            if not isinstance(event, (TextMessage, BytesMessage)):
                return event
            self._buf.append(event.data)
            if event.message_finished:
                parts, self._buf = self._buf, []
                if isinstance(event, TextMessage):
                    return "".join(parts)
                return b"".join(parts)

    async def aclose(self) -> None:
        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), 5)
        except (OSError, asyncio.TimeoutError):
            pass


@pytest_asyncio.fixture
async def connect(relay_server):
    """Factory fixture: `client = await connect()`; all clients are closed afterwards."""
    clients: List[WsClient] = []

    async def _connect(target: str = "/") -> WsClient:
        client = await WsClient.connect(server_port(relay_server), target)
        clients.append(client)
        return client

    yield _connect
    for client in clients:
        await client.aclose()
