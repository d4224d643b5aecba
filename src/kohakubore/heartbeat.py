"""
Heartbeat background tasks.

The client sends a heartbeat over the control channel every interval.
The server tracks when it last heard anything from the client and declares
the session dead after ``interval * multiple`` seconds of silence.
"""

import asyncio
import time
from typing import Callable

from kohakubore.exceptions import PeerUnreachable
from kohakubore.protocol import ControlChannel, Heartbeat
from kohakubore.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 0.5
DEFAULT_TIMEOUT_MULTIPLE = 4


async def send_heartbeats(
    channel: ControlChannel,
    interval: float = DEFAULT_INTERVAL_SECONDS,
) -> None:
    """
    Send periodic heartbeats until the channel fails.

    A tick is skipped while the previous heartbeat (or any other send) is
    still waiting on the transport buffer.

    Raises:
        PeerUnreachable: when a heartbeat send fails
    """
    pending: asyncio.Task | None = None

    try:
        while True:
            await asyncio.sleep(interval)

            if pending is not None and pending.done():
                # Propagates the send failure, if any
                pending.result()
                pending = None

            if pending is not None or channel.sending:
                logger.trace("Previous send still in flight, skipping heartbeat.")
                continue

            pending = asyncio.create_task(channel.send(Heartbeat()))
    finally:
        if pending is not None and not pending.done():
            pending.cancel()


class LivenessMonitor:
    """
    Last-seen deadline for one control session.

    Args:
        interval: Heartbeat interval the peer is expected to use.
        multiple: Number of silent intervals tolerated.
        clock: Monotonic time source (replaceable in tests).
    """

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        multiple: int = DEFAULT_TIMEOUT_MULTIPLE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.timeout = interval * multiple
        self._clock = clock
        self.last_seen = clock()

    def touch(self) -> None:
        """Record that the peer was heard from just now."""
        self.last_seen = self._clock()

    @property
    def remaining(self) -> float:
        return self.last_seen + self.timeout - self._clock()

    def expired(self) -> bool:
        return self.remaining <= 0

    async def watch(self, name: str = "") -> None:
        """
        Return only by raising once the deadline passes.

        Raises:
            PeerUnreachable: no message within the timeout
        """
        while not self.expired():
            await asyncio.sleep(min(self.remaining, self.interval))

        logger.warning(
            f"[Session {name}] No message for {self.timeout:.1f}s, "
            "treating peer as dead."
        )
        raise PeerUnreachable(f"Heartbeat timeout after {self.timeout:.1f}s")
