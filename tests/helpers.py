"""Shared helpers for the KohakuBore test suite."""

import asyncio
import socket

from kohakubore.client.config import ClientConfig
from kohakubore.server.config import ServerConfig

LOCALHOST = "127.0.0.1"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EchoServer:
    """TCP echo server that records everything it receives."""

    def __init__(self):
        self.server: asyncio.Server | None = None
        self.received = bytearray()
        self.connections = 0

    @property
    def port(self) -> int:
        return self.server.sockets[0].getsockname()[1]

    async def start(self, port: int = 0) -> int:
        self.server = await asyncio.start_server(self._handle, LOCALHOST, port)
        return self.port

    def close(self) -> None:
        if self.server is not None:
            self.server.close()

    async def _handle(self, reader, writer) -> None:
        self.connections += 1
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                self.received.extend(data)
                writer.write(data)
                await writer.drain()
        except OSError:
            pass
        finally:
            writer.close()


def free_port() -> int:
    """Ask the OS for a currently unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((LOCALHOST, 0))
        return s.getsockname()[1]


async def open_stream_pair():
    """
    Two connected stream endpoints over localhost.

    Returns:
        ((server_reader, server_writer), (client_reader, client_writer))
    """
    accepted = asyncio.get_running_loop().create_future()

    async def on_connect(reader, writer):
        accepted.set_result((reader, writer))

    server = await asyncio.start_server(on_connect, LOCALHOST, 0)
    port = server.sockets[0].getsockname()[1]
    client_side = await asyncio.open_connection(LOCALHOST, port)
    server_side = await asyncio.wait_for(accepted, timeout=2.0)
    server.close()
    return server_side, client_side


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def make_server_config(**overrides) -> ServerConfig:
    """Server config bound to localhost with an ephemeral control port."""
    values = dict(
        BIND_ADDR=LOCALHOST,
        CONTROL_PORT=0,
        BIND_TUNNELS=LOCALHOST,
    )
    values.update(overrides)
    return ServerConfig(**values)


def make_client_config(control_port: int, local_port: int, **overrides) -> ClientConfig:
    """Client config pointing at a local test server."""
    values = dict(
        LOCAL_HOST=LOCALHOST,
        LOCAL_PORT=local_port,
        SERVER_ADDRESS=LOCALHOST,
        CONTROL_PORT=control_port,
    )
    values.update(overrides)
    return ClientConfig(**values)
