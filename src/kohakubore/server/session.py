"""
Server-side control session.

One session per connected client. It owns the leased public port, the
table of public connections waiting to be paired, and the relays spawned
from it. Public connections are announced to the client over the control
channel; the client answers each announcement by opening a data
connection, which the server pairs with the waiting public socket.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable

from kohakubore.auth import Authenticator
from kohakubore.exceptions import (
    PeerUnreachable,
    ProtocolViolation,
    TunnelError,
)
from kohakubore.heartbeat import LivenessMonitor
from kohakubore.models.enums import ServerSessionState
from kohakubore.protocol import (
    AcceptConnection,
    ControlChannel,
    Heartbeat,
    Hello,
    HelloAck,
    NewConnection,
)
from kohakubore.relay import relay
from kohakubore.server.config import ServerConfig
from kohakubore.server.port_allocator import PortAllocator
from kohakubore.utils.logger import get_logger

logger = get_logger(__name__)

CONNECTION_ID_BYTES = 16


def generate_connection_id() -> str:
    """128-bit random connection identifier, hex encoded."""
    return secrets.token_hex(CONNECTION_ID_BYTES)


@dataclass
class PendingPairing:
    """A public connection waiting for the client's data connection."""

    id: str
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    created_at: float = field(default_factory=time.monotonic)


class ServerControlSession:
    """
    Control session state machine for one client.

    Args:
        channel: Control connection (the ``hello`` frame already consumed).
        allocator: Shared port allocator.
        authenticator: Server-side authenticator.
        config: Server configuration.
        pairing_index: Server-wide map from connection id to owning session,
            used to route incoming data connections.
        clock: Monotonic time source (replaceable in tests).
    """

    def __init__(
        self,
        channel: ControlChannel,
        allocator: PortAllocator,
        authenticator: Authenticator,
        config: ServerConfig,
        pairing_index: dict[str, "ServerControlSession"] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel = channel
        self.allocator = allocator
        self.authenticator = authenticator
        self.config = config
        self.state = ServerSessionState.AWAITING_HELLO
        self.port: int | None = None

        self._clock = clock
        self._pairing_index = pairing_index if pairing_index is not None else {}
        self._pending: dict[str, PendingPairing] = {}
        self._lock = asyncio.Lock()
        self._relays: set[asyncio.Task] = set()
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self.closed = asyncio.Event()

        self.liveness = LivenessMonitor(
            interval=config.HEARTBEAT_INTERVAL_SECONDS,
            multiple=config.HEARTBEAT_TIMEOUT_MULTIPLE,
            clock=clock,
        )

    @property
    def log_prefix(self) -> str:
        if self.port is not None:
            return f"[Session :{self.port}]"
        return f"[Session {self.channel.peername}]"

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    @property
    def active_relays(self) -> set[asyncio.Task]:
        return set(self._relays)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self, hello: Hello) -> None:
        """
        Drive the session from the received ``hello`` until it closes.

        Handshake failures are reported to the client with an ``error``
        frame; the session is always closed on return.
        """
        try:
            try:
                await self._handshake(hello)
            except TunnelError as e:
                logger.warning(f"{self.log_prefix} Handshake failed: {e}")
                await self.channel.send_error(e)
                return

            await self._serve()

        except ProtocolViolation as e:
            logger.warning(f"{self.log_prefix} Protocol violation: {e}")
            await self.channel.send_error(e)
        except PeerUnreachable as e:
            logger.info(f"{self.log_prefix} Control channel lost: {e}")
        except TunnelError as e:
            logger.warning(f"{self.log_prefix} Closing after error: {e}")
            await self.channel.send_error(e)
        finally:
            await self.close()

    async def _handshake(self, hello: Hello) -> None:
        if self.authenticator.enabled:
            self.state = ServerSessionState.AWAITING_AUTH
            await self.authenticator.server_handshake(self.channel)

        lease = await self.allocator.lease(
            hello.port, self._on_public_connection, owner=str(self.channel.peername)
        )
        self.port = lease.port

        await self.channel.send(HelloAck(port=lease.port))
        self.state = ServerSessionState.ACTIVE
        self._ready.set()
        logger.info(f"{self.log_prefix} Tunnel open for {self.channel.peername}.")

    async def _serve(self) -> None:
        self.liveness.touch()
        tasks = {
            asyncio.create_task(self._read_loop()),
            asyncio.create_task(self.liveness.watch(str(self.port))),
            asyncio.create_task(self._sweep_loop()),
            asyncio.create_task(self._stop.wait()),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _read_loop(self) -> None:
        while True:
            message = await self.channel.recv()
            if message is None:
                logger.info(f"{self.log_prefix} Client closed the control channel.")
                return

            self.liveness.touch()

            match message:
                case Heartbeat():
                    continue
                case AcceptConnection():
                    raise ProtocolViolation(
                        "accept_connection must be sent on a new data connection"
                    )
                case _:
                    raise ProtocolViolation(
                        f"Unexpected {message.type} message on active control channel"
                    )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.PENDING_SWEEP_INTERVAL_SECONDS)
            await self.expire_pending()

    def stop(self) -> None:
        """Ask an active session to shut down."""
        self._stop.set()

    async def close(self) -> None:
        """
        Release every resource held by the session.

        The leased port is released first so it can be leased again at once.
        Pending public connections are closed. Running relays are left alone.
        """
        if self.state == ServerSessionState.CLOSED:
            return
        self.state = ServerSessionState.CLOSED
        self._ready.set()
        self._stop.set()

        if self.port is not None:
            self.allocator.release(self.port)

        async with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            for pairing in pending:
                self._pairing_index.pop(pairing.id, None)

        for pairing in pending:
            pairing.writer.close()

        await self.channel.close()
        self.closed.set()

        logger.info(
            f"{self.log_prefix} Session closed "
            f"({len(pending)} pending dropped, {len(self._relays)} relays still running)."
        )

    # =========================================================================
    # Pairing
    # =========================================================================

    async def _on_public_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Register a public connection and announce it to the client."""
        await self._ready.wait()
        if self.state != ServerSessionState.ACTIVE:
            writer.close()
            return

        conn_id = generate_connection_id()
        pairing = PendingPairing(
            id=conn_id, reader=reader, writer=writer, created_at=self._clock()
        )
        async with self._lock:
            self._pending[conn_id] = pairing
            self._pairing_index[conn_id] = self

        logger.debug(
            f"{self.log_prefix} Public connection from "
            f"{writer.get_extra_info('peername')} as {conn_id[:8]}."
        )

        try:
            await self.channel.send(NewConnection(id=conn_id))
        except PeerUnreachable as e:
            logger.warning(f"{self.log_prefix} Could not announce connection: {e}")
            await self.claim(conn_id)
            writer.close()
            self.stop()

    async def claim(self, conn_id: str) -> PendingPairing | None:
        """
        Atomically remove and return a pending pairing.

        Returns:
            The pairing, or None if the id is unknown, expired or already
            claimed.
        """
        async with self._lock:
            pairing = self._pending.pop(conn_id, None)
            if pairing is not None:
                self._pairing_index.pop(conn_id, None)
            return pairing

    async def accept(
        self,
        conn_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> bool:
        """
        Pair a data connection with the public connection it claims.

        Unknown ids only close the data connection; the session is unaffected.

        Returns:
            True if a relay was started.
        """
        pairing = await self.claim(conn_id)
        if pairing is None:
            logger.warning(
                f"{self.log_prefix} Data connection for unknown id {conn_id[:8]}, closing it."
            )
            writer.close()
            return False

        self._spawn_relay(pairing, reader, writer)
        return True

    def _spawn_relay(
        self,
        pairing: PendingPairing,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            relay(pairing.reader, pairing.writer, reader, writer, name=pairing.id[:8])
        )
        self._relays.add(task)
        task.add_done_callback(self._relays.discard)
        logger.debug(f"{self.log_prefix} Relay started for {pairing.id[:8]}.")
        return task

    async def expire_pending(self) -> int:
        """
        Drop pending pairings older than the configured timeout.

        Returns:
            Number of pairings dropped.
        """
        now = self._clock()
        timeout = self.config.PENDING_TIMEOUT_SECONDS

        async with self._lock:
            expired = [
                pairing
                for pairing in self._pending.values()
                if now - pairing.created_at >= timeout
            ]
            for pairing in expired:
                self._pending.pop(pairing.id, None)
                self._pairing_index.pop(pairing.id, None)

        for pairing in expired:
            logger.warning(
                f"{self.log_prefix} Connection {pairing.id[:8]} was not accepted "
                f"within {timeout:.1f}s, dropping it."
            )
            pairing.writer.close()

        return len(expired)
