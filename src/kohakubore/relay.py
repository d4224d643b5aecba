"""Bidirectional stream relay."""

import asyncio

from kohakubore.utils.logger import get_logger

logger = get_logger(__name__)

RELAY_CHUNK_SIZE = 64 * 1024


async def bind_reader_writer(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> int:
    """
    Pipe data from reader to writer until EOF or error.

    Args:
        reader: AsyncIO stream reader.
        writer: AsyncIO stream writer.

    Returns:
        Number of bytes copied.
    """
    copied = 0
    while True:
        try:
            data = await reader.read(RELAY_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
            copied += len(data)
        except OSError:
            break
    return copied


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
    except (OSError, asyncio.TimeoutError):
        pass


async def relay(
    reader_a: asyncio.StreamReader,
    writer_a: asyncio.StreamWriter,
    reader_b: asyncio.StreamReader,
    writer_b: asyncio.StreamWriter,
    name: str = "",
) -> tuple[int, int]:
    """
    Copy bytes A→B and B→A until either direction ends.

    When the first direction finishes both streams are closed, which ends
    the other direction promptly.

    Args:
        reader_a, writer_a: First stream.
        reader_b, writer_b: Second stream.
        name: Label for log lines.

    Returns:
        Bytes copied (A→B, B→A).
    """
    log_prefix = f"[Relay {name}]" if name else "[Relay]"

    a_to_b = asyncio.create_task(bind_reader_writer(reader_a, writer_b))
    b_to_a = asyncio.create_task(bind_reader_writer(reader_b, writer_a))

    try:
        await asyncio.wait({a_to_b, b_to_a}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        await _close_writer(writer_a)
        await _close_writer(writer_b)
        results = await asyncio.gather(a_to_b, b_to_a, return_exceptions=True)

    sent, received = (r if isinstance(r, int) else 0 for r in results)
    logger.debug(f"{log_prefix} Finished: {sent} bytes out, {received} bytes back.")
    return sent, received
