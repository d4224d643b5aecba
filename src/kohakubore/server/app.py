"""
Tunnel server.

Accepts connections on the control port. The first frame decides what a
connection is: ``hello`` starts a control session, ``accept_connection``
makes it the data connection for a pending public connection.
"""

import asyncio

from kohakubore.auth import Authenticator
from kohakubore.exceptions import ProtocolViolation, TunnelError
from kohakubore.protocol import AcceptConnection, ControlChannel, Hello
from kohakubore.server.config import ServerConfig, config as default_config
from kohakubore.server.port_allocator import PortAllocator
from kohakubore.server.session import ServerControlSession
from kohakubore.utils.logger import get_logger

logger = get_logger(__name__)


class TunnelServer:
    """
    Control-port listener and session registry.

    Args:
        config: Server configuration (defaults to the global instance).
    """

    def __init__(self, config: ServerConfig | None = None):
        self.config = config or default_config
        self.config.validate()

        self.allocator = PortAllocator(
            self.config.MIN_PORT, self.config.MAX_PORT, self.config.BIND_TUNNELS
        )
        self.authenticator = Authenticator(self.config.SECRET)
        self.sessions: set[ServerControlSession] = set()

        # connection id -> session holding the pending public connection
        self._pairing_index: dict[str, ServerControlSession] = {}
        self._server: asyncio.Server | None = None
        self._closed = asyncio.Event()

    @property
    def port(self) -> int | None:
        """Bound control port, once started."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> int:
        """
        Bind the control port.

        Returns:
            The bound control port (useful when CONTROL_PORT is 0).
        """
        self._server = await asyncio.start_server(
            self.handle_connection, self.config.BIND_ADDR, self.config.CONTROL_PORT
        )
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets)
        logger.info(
            f"Tunnel server listening on {addrs}, "
            f"ports {self.config.MIN_PORT}-{self.config.MAX_PORT}"
            f"{' (authentication enabled)' if self.authenticator.enabled else ''}"
        )
        return self.port

    async def serve_forever(self) -> None:
        """Run until close() is called."""
        if self._server is None:
            await self.start()
        await self._closed.wait()

    async def listen(self) -> None:
        """Start the server and run until cancelled."""
        try:
            await self.serve_forever()
        except asyncio.CancelledError:
            logger.info("Tunnel server task cancelled.")
            raise
        finally:
            await self.close()

    async def close(self) -> None:
        """
        Stop accepting connections and close every session.

        The listener is closed without waiting on open connections, since
        relays outlive their sessions.
        """
        if self._closed.is_set():
            return
        self._closed.set()
        if self._server is not None:
            self._server.close()
        for session in list(self.sessions):
            await session.close()
        logger.info("Tunnel server shut down.")

    # =========================================================================
    # Connection Dispatch
    # =========================================================================

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a single incoming connection on the control port."""
        channel = ControlChannel(reader, writer, self.config.NETWORK_TIMEOUT_SECONDS)
        log_prefix = f"[Client {channel.peername}]"
        logger.debug(f"{log_prefix} New connection.")

        try:
            message = await channel.recv(timeout=self.config.NETWORK_TIMEOUT_SECONDS)

            match message:
                case None:
                    logger.debug(f"{log_prefix} Closed before sending anything.")
                    await channel.close()
                case Hello():
                    await self._run_session(channel, message)
                case AcceptConnection():
                    await self._handle_accept(channel, message)
                case _:
                    raise ProtocolViolation(
                        f"Expected hello or accept_connection, got {message.type}"
                    )

        except TunnelError as e:
            logger.warning(f"{log_prefix} Rejecting connection: {e}")
            await channel.send_error(e)
            await channel.close()

        except Exception as e:
            logger.exception(f"{log_prefix} Unexpected error in connection handler: {e}")
            await channel.close()

    async def _run_session(self, channel: ControlChannel, hello: Hello) -> None:
        session = ServerControlSession(
            channel,
            self.allocator,
            self.authenticator,
            self.config,
            pairing_index=self._pairing_index,
        )
        self.sessions.add(session)
        try:
            await session.run(hello)
        finally:
            self.sessions.discard(session)

    async def _handle_accept(
        self, channel: ControlChannel, message: AcceptConnection
    ) -> None:
        await self.authenticator.server_handshake(channel)

        session = self._pairing_index.get(message.id)
        if session is None:
            logger.warning(
                f"[Client {channel.peername}] Data connection for unknown id "
                f"{message.id[:8]}, closing it."
            )
            await channel.close()
            return

        await session.accept(message.id, channel.reader, channel.writer)
