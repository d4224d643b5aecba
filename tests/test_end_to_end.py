"""
End-to-end tests: a real TunnelServer, real Clients and a local echo service,
all on 127.0.0.1.

Run with: pytest tests/test_end_to_end.py -v
"""

import asyncio

import pytest
import pytest_asyncio

from helpers import (
    LOCALHOST,
    EchoServer,
    free_port,
    make_client_config,
    make_server_config,
    wait_until,
)
from kohakubore.auth import prove
from kohakubore.client.session import Client
from kohakubore.exceptions import (
    AuthenticationFailed,
    AuthenticationMismatch,
    NoPortsAvailable,
    ProtocolViolation,
    UnknownMessageType,
)
from kohakubore.models.enums import ClientSessionState, ServerSessionState
from kohakubore.protocol import (
    FRAME_DELIMITER,
    AcceptConnection,
    Authenticate,
    Challenge,
    ControlChannel,
    Heartbeat,
    Hello,
    HelloAck,
    NewConnection,
)
from kohakubore.server.app import TunnelServer

pytestmark = [pytest.mark.integration]


# ============================================================================
# Fixtures
# ============================================================================


class Tunnel:
    """Server, echo service and any number of clients, torn down together."""

    def __init__(self, server: TunnelServer, echo: EchoServer):
        self.server = server
        self.echo = echo
        self.control_port = server.port
        self.clients: list[Client] = []
        self.tasks: list[asyncio.Task] = []
        self.channels: list[ControlChannel] = []
        self.writers: list[asyncio.StreamWriter] = []

    def client(self, local_port: int | None = None, **overrides) -> Client:
        client = Client(
            make_client_config(
                self.control_port,
                self.echo.port if local_port is None else local_port,
                **overrides,
            )
        )
        self.clients.append(client)
        return client

    async def open(self, client: Client) -> int:
        port = await client.connect()
        self.tasks.append(asyncio.create_task(client.listen()))
        return port

    async def connect_raw(self) -> ControlChannel:
        """Plain framed connection to the control port."""
        channel = await ControlChannel.connect(LOCALHOST, self.control_port)
        self.channels.append(channel)
        return channel

    async def connect_public(self, port: int):
        reader, writer = await asyncio.open_connection(LOCALHOST, port)
        self.writers.append(writer)
        return reader, writer

    async def close(self):
        for writer in self.writers:
            writer.close()
        for channel in self.channels:
            await channel.close()
        for client in self.clients:
            await client.close()
            for task in client.active_relays:
                task.cancel()
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        await self.server.close()
        self.echo.close()


@pytest_asyncio.fixture
async def make_tunnel():
    tunnels = []

    async def factory(**server_overrides) -> Tunnel:
        if "MIN_PORT" not in server_overrides:
            port = free_port()
            server_overrides.update(MIN_PORT=port, MAX_PORT=port + 1)
        server = TunnelServer(make_server_config(**server_overrides))
        await server.start()
        echo = EchoServer()
        await echo.start()
        tunnel = Tunnel(server, echo)
        tunnels.append(tunnel)
        return tunnel

    yield factory

    for tunnel in tunnels:
        await tunnel.close()


async def exchange(port: int, payload: bytes) -> bytes:
    """Send ``payload`` to the public port and read the echo back."""
    reader, writer = await asyncio.open_connection(LOCALHOST, port)
    try:
        writer.write(payload)
        await writer.drain()
        return await asyncio.wait_for(reader.readexactly(len(payload)), 3.0)
    finally:
        writer.close()


async def open_raw_session(tunnel: Tunnel, secret: bytes | None = None):
    """Handshake by hand; returns (control channel, leased port)."""
    control = await tunnel.connect_raw()
    await control.send(Hello(port=0))
    message = await control.expect(Challenge, HelloAck)
    if isinstance(message, Challenge):
        await control.send(Authenticate(proof=prove(secret, message.nonce)))
        message = await control.expect(HelloAck)
    return control, message.port


# ============================================================================
# Forwarding
# ============================================================================


class TestForwarding:
    @pytest.mark.asyncio
    async def test_ping_without_secret(self, make_tunnel):
        tunnel = await make_tunnel()
        client = tunnel.client()
        port = await tunnel.open(client)

        assert port == tunnel.server.config.MIN_PORT
        assert await exchange(port, b"ping") == b"ping"
        await wait_until(lambda: bytes(tunnel.echo.received) == b"ping")
        assert bytes(tunnel.echo.received) == b"ping"

    @pytest.mark.asyncio
    async def test_many_connections_through_one_tunnel(self, make_tunnel):
        tunnel = await make_tunnel()
        port = await tunnel.open(tunnel.client())

        payloads = [f"message-{i}".encode() * 50 for i in range(10)]
        results = await asyncio.gather(*(exchange(port, p) for p in payloads))

        assert results == payloads
        assert tunnel.echo.connections == 10

    @pytest.mark.asyncio
    async def test_correct_secret(self, make_tunnel):
        tunnel = await make_tunnel(SECRET=b"s3cret")
        client = tunnel.client(SECRET=b"s3cret")
        port = await tunnel.open(client)

        assert await exchange(port, b"authenticated") == b"authenticated"

    @pytest.mark.asyncio
    async def test_requested_port_is_honoured(self, make_tunnel):
        tunnel = await make_tunnel()
        wanted = tunnel.server.config.MAX_PORT
        port = await tunnel.open(tunnel.client(REQUESTED_PORT=wanted))
        assert port == wanted

    @pytest.mark.asyncio
    async def test_local_service_down_is_not_fatal(self, make_tunnel):
        tunnel = await make_tunnel()
        client = tunnel.client(local_port=free_port())
        port = await tunnel.open(client)

        reader, writer = await asyncio.open_connection(LOCALHOST, port)
        assert await asyncio.wait_for(reader.read(), 3.0) == b""
        writer.close()

        assert client.state == ClientSessionState.ACTIVE
        session = next(iter(tunnel.server.sessions))
        assert session.state == ServerSessionState.ACTIVE


# ============================================================================
# Authentication
# ============================================================================


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, make_tunnel):
        tunnel = await make_tunnel(SECRET=b"s3cret")
        client = tunnel.client(SECRET=b"wrong")

        with pytest.raises(AuthenticationFailed):
            await client.connect()

        assert client.state == ClientSessionState.CLOSED
        assert tunnel.server.allocator.leased_ports() == []

    @pytest.mark.asyncio
    async def test_client_without_secret(self, make_tunnel):
        tunnel = await make_tunnel(SECRET=b"s3cret")
        client = tunnel.client()

        with pytest.raises(AuthenticationMismatch):
            await client.connect()
        assert tunnel.server.allocator.leased_ports() == []

    @pytest.mark.asyncio
    async def test_server_without_secret(self, make_tunnel):
        tunnel = await make_tunnel()
        client = tunnel.client(SECRET=b"s3cret")

        with pytest.raises(AuthenticationMismatch):
            await client.connect()

        # Server leased before learning of the mismatch, then releases on close
        assert await wait_until(lambda: not tunnel.server.allocator.leased_ports())
        assert await wait_until(lambda: not tunnel.server.sessions)


# ============================================================================
# Allocation and Lifecycle
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_single_port_contention(self, make_tunnel):
        port = free_port()
        tunnel = await make_tunnel(MIN_PORT=port, MAX_PORT=port)
        first, second = tunnel.client(), tunnel.client()

        results = await asyncio.gather(
            first.connect(), second.connect(), return_exceptions=True
        )

        assert sorted(results, key=lambda r: isinstance(r, Exception))[0] == port
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], NoPortsAvailable)

    @pytest.mark.asyncio
    async def test_port_released_when_client_leaves(self, make_tunnel):
        port = free_port()
        tunnel = await make_tunnel(MIN_PORT=port, MAX_PORT=port)

        first = tunnel.client()
        assert await first.connect() == port
        await first.close()
        assert await wait_until(lambda: not tunnel.server.allocator.leased_ports())

        second = tunnel.client()
        assert await tunnel.open(second) == port

    @pytest.mark.asyncio
    async def test_client_listen_returns_when_server_closes(self, make_tunnel):
        tunnel = await make_tunnel()
        client = tunnel.client()
        await client.connect()
        listening = asyncio.create_task(client.listen())

        await tunnel.server.close()
        await asyncio.wait_for(listening, 3.0)

        assert client.state == ClientSessionState.CLOSED
        assert client.closed.is_set()

    @pytest.mark.asyncio
    async def test_listen_requires_connect(self, make_tunnel):
        tunnel = await make_tunnel()
        with pytest.raises(RuntimeError):
            await tunnel.client().listen()


# ============================================================================
# Control Port Dispatch
# ============================================================================


class TestDispatch:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("proof", ["0" * 64, None], ids=["wrong", "missing"])
    async def test_bad_data_connection_auth_keeps_pairing(self, make_tunnel, proof):
        tunnel = await make_tunnel(SECRET=b"s3cret", HEARTBEAT_INTERVAL_SECONDS=60.0)
        control, port = await open_raw_session(tunnel, b"s3cret")
        _, public_w = await tunnel.connect_public(port)
        announced = await control.expect(NewConnection)

        rejected = await tunnel.connect_raw()
        await rejected.send(AcceptConnection(id=announced.id))
        await rejected.expect(Challenge)
        if proof is None:
            await rejected.send(Heartbeat())
            expected = ProtocolViolation
        else:
            await rejected.send(Authenticate(proof=proof))
            expected = AuthenticationFailed

        with pytest.raises(expected):
            await rejected.expect(Heartbeat)
        assert await rejected.recv(timeout=2.0) is None

        session = next(iter(tunnel.server.sessions))
        assert session.state == ServerSessionState.ACTIVE
        assert session.pending_ids == [announced.id]

        # The pairing is still claimable with a valid proof
        accepted = await tunnel.connect_raw()
        await accepted.send(AcceptConnection(id=announced.id))
        challenge = await accepted.expect(Challenge)
        await accepted.send(Authenticate(proof=prove(b"s3cret", challenge.nonce)))

        public_w.write(b"paired")
        await public_w.drain()
        assert await asyncio.wait_for(accepted.reader.readexactly(6), 2.0) == b"paired"
        assert session.pending_ids == []

    @pytest.mark.asyncio
    async def test_unknown_id_closes_only_data_connection(self, make_tunnel):
        tunnel = await make_tunnel()
        client = tunnel.client()
        port = await tunnel.open(client)

        data = await tunnel.connect_raw()
        await data.send(AcceptConnection(id="ff" * 16))
        assert await data.recv(timeout=2.0) is None

        assert client.state == ClientSessionState.ACTIVE
        assert await exchange(port, b"still up") == b"still up"

    @pytest.mark.asyncio
    async def test_unexpected_first_frame(self, make_tunnel):
        tunnel = await make_tunnel()
        channel = await tunnel.connect_raw()
        await channel.send(Heartbeat())

        with pytest.raises(ProtocolViolation):
            await channel.expect(HelloAck)
        assert await channel.recv(timeout=2.0) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "tag", ['\\"' * 110, "\\u00e9" * 40, "\\u0001" * 40], ids=["quotes", "latin", "control"]
    )
    async def test_unknown_tag_with_escaped_name_gets_error_reply(self, make_tunnel, tag):
        tunnel = await make_tunnel()
        channel = await tunnel.connect_raw()

        channel.writer.write(b'{"type": "' + tag.encode("ascii") + b'"}' + FRAME_DELIMITER)
        await channel.writer.drain()

        with pytest.raises(UnknownMessageType):
            await channel.expect(HelloAck)
        assert await channel.recv(timeout=2.0) is None
