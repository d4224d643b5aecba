"""
Tunnel client.

Holds the control connection to the server and forwards every announced
public connection to the local service over a fresh data connection.
"""

import asyncio

from kohakubore.auth import Authenticator
from kohakubore.client.config import ClientConfig, config as default_config
from kohakubore.exceptions import (
    AuthenticationMismatch,
    PeerUnreachable,
    ProtocolViolation,
    TunnelError,
)
from kohakubore.heartbeat import send_heartbeats
from kohakubore.models.enums import ClientSessionState
from kohakubore.protocol import (
    AcceptConnection,
    Challenge,
    ControlChannel,
    Error,
    Heartbeat,
    Hello,
    HelloAck,
    NewConnection,
)
from kohakubore.relay import relay
from kohakubore.utils.logger import get_logger

logger = get_logger(__name__)


class Client:
    """
    Client side of a tunnel.

    Usage:
        client = Client(config)
        port = await client.connect()
        await client.listen()

    Args:
        config: Client configuration (defaults to the global instance).
    """

    def __init__(self, config: ClientConfig | None = None):
        self.config = config or default_config
        self.authenticator = Authenticator(self.config.SECRET)
        self.state = ClientSessionState.CONNECTING
        self.channel: ControlChannel | None = None
        self.remote_port: int | None = None
        self.closed = asyncio.Event()
        self._relays: set[asyncio.Task] = set()

    @property
    def active_relays(self) -> set[asyncio.Task]:
        return set(self._relays)

    async def _open_server_connection(self) -> ControlChannel:
        return await ControlChannel.connect(
            self.config.SERVER_ADDRESS,
            self.config.CONTROL_PORT,
            self.config.NETWORK_TIMEOUT_SECONDS,
        )

    # =========================================================================
    # Handshake
    # =========================================================================

    async def connect(self) -> int:
        """
        Open the control connection and complete the handshake.

        Returns:
            The public port leased by the server.

        Raises:
            PeerUnreachable: server unreachable or connection lost
            AuthenticationMismatch: only one side has a secret
            AuthenticationFailed: wrong secret
            PortAllocationError: requested port unavailable
            ProtocolViolation: unexpected reply from the server
        """
        self.state = ClientSessionState.CONNECTING
        logger.debug(f"[Client] Connecting to {self.config.get_server_address()}...")
        self.channel = await self._open_server_connection()

        self.state = ClientSessionState.HANDSHAKING
        try:
            await self.channel.send(Hello(port=self.config.REQUESTED_PORT))

            message = await self.channel.expect(Challenge, HelloAck)
            await self.authenticator.client_handshake(self.channel, message)
            if isinstance(message, Challenge):
                message = await self.channel.expect(HelloAck)

        except TunnelError as e:
            logger.error(f"[Client] Handshake failed: {e}")
            if isinstance(e, AuthenticationMismatch):
                await self.channel.send_error(e)
            await self.close()
            raise

        self.remote_port = message.port
        self.state = ClientSessionState.ACTIVE
        logger.info(
            f"[Client] Listening at {self.config.SERVER_ADDRESS}:{self.remote_port}, "
            f"forwarding to {self.config.get_local_address()}"
        )
        return self.remote_port

    # =========================================================================
    # Active Session
    # =========================================================================

    async def listen(self) -> None:
        """
        Serve announced connections until the control channel closes.

        Returns normally when the server goes away. Relays that are already
        running keep going after this returns.

        Raises:
            ProtocolViolation: server sent an unexpected message
            TunnelError: server reported an error
        """
        if self.state != ClientSessionState.ACTIVE:
            raise RuntimeError("Client is not connected; call connect() first")

        tasks = {
            asyncio.create_task(self._read_loop()),
            asyncio.create_task(
                send_heartbeats(self.channel, self.config.HEARTBEAT_INTERVAL_SECONDS)
            ),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.close()

        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if isinstance(exc, PeerUnreachable):
                logger.info(f"[Client] Control connection lost: {exc}")
            elif exc is not None:
                raise exc

    async def run(self) -> None:
        """Handshake, then serve until the control channel closes."""
        await self.connect()
        await self.listen()

    async def _read_loop(self) -> None:
        while True:
            message = await self.channel.recv()
            if message is None:
                logger.info("[Client] Server closed the control connection.")
                return

            match message:
                case Heartbeat():
                    continue
                case NewConnection():
                    self._spawn(message.id)
                case Error():
                    raise message.to_exception()
                case _:
                    raise ProtocolViolation(
                        f"Unexpected {message.type} message on active control channel"
                    )

    def _spawn(self, conn_id: str) -> None:
        task = asyncio.create_task(self._handle_connection(conn_id))
        self._relays.add(task)
        task.add_done_callback(self._relays.discard)

    async def _handle_connection(self, conn_id: str) -> None:
        """Open a data connection for ``conn_id`` and relay it to the local service."""
        log_prefix = f"[Connection {conn_id[:8]}]"
        data = None

        try:
            data = await self._open_server_connection()
            await data.send(AcceptConnection(id=conn_id))
            if self.authenticator.enabled:
                message = await data.expect(Challenge)
                await self.authenticator.client_handshake(data, message)
        except TunnelError as e:
            logger.warning(f"{log_prefix} Could not open data connection: {e}")
            if data is not None:
                await data.close()
            return

        try:
            local_reader, local_writer = await asyncio.wait_for(
                asyncio.open_connection(self.config.LOCAL_HOST, self.config.LOCAL_PORT),
                timeout=self.config.NETWORK_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"{log_prefix} Timeout connecting to local service "
                f"{self.config.get_local_address()}."
            )
            await data.close()
            return
        except OSError as e:
            logger.warning(
                f"{log_prefix} Could not connect to local service "
                f"{self.config.get_local_address()}: {e}"
            )
            await data.close()
            return

        logger.debug(f"{log_prefix} Forwarding to {self.config.get_local_address()}.")
        await relay(data.reader, data.writer, local_reader, local_writer, name=conn_id[:8])

    async def close(self) -> None:
        """Close the control connection. Running relays are not interrupted."""
        if self.state == ClientSessionState.CLOSED:
            return
        self.state = ClientSessionState.CLOSED
        if self.channel is not None:
            await self.channel.close()
        self.closed.set()
