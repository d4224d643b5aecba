"""
Port allocator for the tunnel server.

Tracks which public ports are leased to which control session. Leasing
binds the public listener while holding the allocator lock, so a port is
never handed to two sessions.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

from kohakubore.exceptions import NoPortsAvailable, PortInUse, PortOutOfRange
from kohakubore.utils.logger import get_logger

logger = get_logger(__name__)

# Ranges up to this size are scanned in order, lowest port first
SEQUENTIAL_SCAN_LIMIT = 256
# Random ports tried on larger ranges before falling back to a scan
RANDOM_ATTEMPTS = 150

ConnectionHandler = Callable[
    [asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]
]


@dataclass
class Lease:
    """A leased port and the listener bound on it."""

    port: int
    owner: str
    server: asyncio.Server


class PortAllocator:
    """
    Hands out ports from an inclusive range.

    Args:
        min_port: Lowest leasable port.
        max_port: Highest leasable port.
        bind_host: Address public listeners bind to.
    """

    def __init__(self, min_port: int, max_port: int, bind_host: str = "0.0.0.0"):
        if min_port > max_port:
            raise ValueError(f"Port range is empty ({min_port} > {max_port})")
        self.min_port = min_port
        self.max_port = max_port
        self.bind_host = bind_host
        self._leases: dict[int, Lease] = {}
        self._lock = asyncio.Lock()

    def in_range(self, port: int) -> bool:
        return self.min_port <= port <= self.max_port

    def is_leased(self, port: int) -> bool:
        return port in self._leases

    def owner(self, port: int) -> str | None:
        lease = self._leases.get(port)
        return lease.owner if lease else None

    def leased_ports(self) -> list[int]:
        return sorted(self._leases)

    async def _bind(self, port: int, handler: ConnectionHandler) -> asyncio.Server:
        return await asyncio.start_server(handler, self.bind_host, port)

    async def lease(
        self,
        requested_port: int,
        handler: ConnectionHandler,
        owner: str = "",
    ) -> Lease:
        """
        Lease a port and start listening on it.

        Args:
            requested_port: Specific port, or 0 for the first free one.
            handler: Callback for each accepted public connection.
            owner: Identity of the leasing session (for introspection).

        Returns:
            The new lease.

        Raises:
            PortOutOfRange: specific port outside the range
            PortInUse: specific port already leased or bound elsewhere
            NoPortsAvailable: no free port in the range
        """
        async with self._lock:
            if requested_port:
                return await self._lease_specific(requested_port, handler, owner)
            return await self._lease_any(handler, owner)

    async def _lease_specific(
        self, port: int, handler: ConnectionHandler, owner: str
    ) -> Lease:
        if not self.in_range(port):
            raise PortOutOfRange(
                f"Port {port} is outside allowed range "
                f"{self.min_port}-{self.max_port}"
            )
        if port in self._leases:
            raise PortInUse(f"Port {port} is already in use")

        try:
            server = await self._bind(port, handler)
        except OSError as e:
            logger.debug(f"Could not bind requested port {port}: {e}")
            raise PortInUse(f"Port {port} is already in use") from e

        lease = Lease(port=port, owner=owner, server=server)
        self._leases[port] = lease
        logger.info(f"Leased port {port} to {owner or 'session'}.")
        return lease

    def _candidates(self):
        """
        Ports to try for an unspecified lease.

        Small ranges are walked in ascending order. Larger ranges get
        RANDOM_ATTEMPTS random picks before the ascending walk.
        """
        if self.max_port - self.min_port + 1 > SEQUENTIAL_SCAN_LIMIT:
            for _ in range(RANDOM_ATTEMPTS):
                yield random.randint(self.min_port, self.max_port)
        yield from range(self.min_port, self.max_port + 1)

    async def _lease_any(self, handler: ConnectionHandler, owner: str) -> Lease:
        for port in self._candidates():
            if port in self._leases:
                continue
            try:
                server = await self._bind(port, handler)
            except OSError:
                # Bound by some other process
                continue

            lease = Lease(port=port, owner=owner, server=server)
            self._leases[port] = lease
            logger.info(f"Leased port {port} to {owner or 'session'}.")
            return lease

        raise NoPortsAvailable(
            f"No ports available in range {self.min_port}-{self.max_port}"
        )

    def release(self, port: int) -> None:
        """
        Unlease a port and close its listener. Safe to call repeatedly.

        The listening socket is closed immediately so the port can be leased
        again right away.
        """
        lease = self._leases.pop(port, None)
        if lease is None:
            return
        lease.server.close()
        logger.info(f"Released port {port}.")
