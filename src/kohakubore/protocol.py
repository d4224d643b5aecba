"""
Control protocol definitions and utilities.

Wire format (version 1):
┌──────────────────────────────────────────────┬──────────┐
│ JSON object, UTF-8 (<= MAX_FRAME_LENGTH)     │ NUL (1B) │
└──────────────────────────────────────────────┴──────────┘

Every object carries a ``type`` tag:

┌────────────────────┬──────────────────────────┬─────────────────┐
│ type               │ fields                   │ direction       │
├────────────────────┼──────────────────────────┼─────────────────┤
│ hello              │ port                     │ client → server │
│ challenge          │ nonce                    │ server → client │
│ authenticate       │ proof                    │ client → server │
│ hello_ack          │ port                     │ server → client │
│ new_connection     │ id                       │ server → client │
│ accept_connection  │ id                       │ client → server │
│ heartbeat          │ -                        │ client → server │
│ error              │ reason, code (optional)  │ server → client │
└────────────────────┴──────────────────────────┴─────────────────┘

Unknown fields are ignored so newer peers can add fields without breaking
older ones. Unknown tags are rejected.
"""

import asyncio
import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from kohakubore.exceptions import (
    MalformedMessage,
    PeerUnreachable,
    ProtocolViolation,
    UnknownMessageType,
    error_from_code,
)
from kohakubore.models.enums import ErrorCode

# =============================================================================
# Constants
# =============================================================================

PROTOCOL_VERSION: int = 1
CONTROL_PORT: int = 7835
FRAME_DELIMITER: bytes = b"\0"
MAX_FRAME_LENGTH: int = 256
NETWORK_TIMEOUT: float = 3.0

# Error reasons are trimmed so an error frame always fits MAX_FRAME_LENGTH
MAX_REASON_LENGTH: int = 160

TokenStr = Annotated[str, Field(min_length=1, max_length=64)]

# =============================================================================
# Messages
# =============================================================================


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class Hello(_Message):
    """Client asks for a tunnel on ``port`` (0 lets the server choose)."""

    type: Literal["hello"] = "hello"
    port: int = Field(default=0, ge=0, le=65535)


class Challenge(_Message):
    """Server issues a nonce that the client must prove knowledge against."""

    type: Literal["challenge"] = "challenge"
    nonce: TokenStr


class Authenticate(_Message):
    """Client answers a challenge with a keyed proof."""

    type: Literal["authenticate"] = "authenticate"
    proof: TokenStr


class HelloAck(_Message):
    """Server confirms the handshake and reports the leased port."""

    type: Literal["hello_ack"] = "hello_ack"
    port: int = Field(ge=0, le=65535)


class NewConnection(_Message):
    """Server announces a public connection waiting to be paired."""

    type: Literal["new_connection"] = "new_connection"
    id: TokenStr


class AcceptConnection(_Message):
    """First frame of a data connection: claims a pending public connection."""

    type: Literal["accept_connection"] = "accept_connection"
    id: TokenStr


class Heartbeat(_Message):
    """Liveness signal on the control channel."""

    type: Literal["heartbeat"] = "heartbeat"


class Error(_Message):
    """Fatal error report; the sender closes the connection afterwards."""

    type: Literal["error"] = "error"
    reason: str
    code: str | None = None

    @classmethod
    def from_exception(cls, exc: Exception) -> "Error":
        """
        Build an error report whose encoded frame always fits MAX_FRAME_LENGTH.

        The reason is trimmed by encoded size, since JSON escaping and
        multibyte characters can make a short reason long on the wire.
        """
        code = getattr(exc, "code", ErrorCode.GENERIC).value
        reason = str(exc)[:MAX_REASON_LENGTH]

        while True:
            message = cls(reason=reason, code=code)
            excess = len(message.model_dump_json(exclude_none=True).encode("utf-8"))
            excess -= MAX_FRAME_LENGTH
            if excess <= 0 or not reason:
                return message
            # Every character costs at least one byte
            reason = reason[: max(0, len(reason) - excess)]

    def to_exception(self):
        return error_from_code(self.code, self.reason)


ControlMessage = Annotated[
    Union[
        Hello,
        Challenge,
        Authenticate,
        HelloAck,
        NewConnection,
        AcceptConnection,
        Heartbeat,
        Error,
    ],
    Field(discriminator="type"),
]

MESSAGE_TYPES: dict[str, type[_Message]] = {
    cls.model_fields["type"].default: cls
    for cls in (
        Hello,
        Challenge,
        Authenticate,
        HelloAck,
        NewConnection,
        AcceptConnection,
        Heartbeat,
        Error,
    )
}

_message_adapter = TypeAdapter(ControlMessage)


# =============================================================================
# Encode / Decode
# =============================================================================


def encode_message(message: _Message) -> bytes:
    """
    Serialize a control message into one frame.

    Args:
        message: Any control message instance.

    Returns:
        JSON body followed by FRAME_DELIMITER.

    Raises:
        MalformedMessage: if the encoded body exceeds MAX_FRAME_LENGTH
    """
    body = message.model_dump_json(exclude_none=True).encode("utf-8")
    if len(body) > MAX_FRAME_LENGTH:
        raise MalformedMessage(
            f"Frame too long: {len(body)} bytes (max {MAX_FRAME_LENGTH})"
        )
    return body + FRAME_DELIMITER


def decode_message(data: bytes) -> ControlMessage:
    """
    Deserialize one frame into a control message.

    Args:
        data: Frame body, with or without the trailing delimiter.

    Returns:
        The decoded message.

    Raises:
        MalformedMessage: bad JSON, missing tag, wrong field types, oversize
        UnknownMessageType: well-formed frame with an unrecognised tag
    """
    if data.endswith(FRAME_DELIMITER):
        data = data[: -len(FRAME_DELIMITER)]

    if len(data) > MAX_FRAME_LENGTH:
        raise MalformedMessage(
            f"Frame too long: {len(data)} bytes (max {MAX_FRAME_LENGTH})"
        )

    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"Invalid frame encoding: {e}") from e

    if not isinstance(obj, dict):
        raise MalformedMessage("Frame is not a JSON object")

    tag = obj.get("type")
    if not isinstance(tag, str):
        raise MalformedMessage("Frame has no message type")
    if tag not in MESSAGE_TYPES:
        raise UnknownMessageType(f"Unknown message type: {tag!r}")

    try:
        return _message_adapter.validate_python(obj)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid {tag} message: {e.error_count()} error(s)") from e


# =============================================================================
# Framed Stream
# =============================================================================


class ControlChannel:
    """
    Framed message stream over one TCP connection.

    Sends are serialized through a lock so concurrent senders (listener
    loop, error paths) never interleave partial frames.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        timeout: float = NETWORK_TIMEOUT,
    ):
        self.reader = reader
        self.writer = writer
        self.timeout = timeout
        self.peername = writer.get_extra_info("peername")
        self._send_lock = asyncio.Lock()

    @classmethod
    async def connect(
        cls, host: str, port: int, timeout: float = NETWORK_TIMEOUT
    ) -> "ControlChannel":
        """
        Open a connection to a KohakuBore server.

        Raises:
            PeerUnreachable: if the connection cannot be established in time
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise PeerUnreachable(f"Timed out connecting to {host}:{port}") from e
        except OSError as e:
            raise PeerUnreachable(f"Could not connect to {host}:{port}: {e}") from e
        return cls(reader, writer, timeout)

    @property
    def sending(self) -> bool:
        """True while a send is in progress."""
        return self._send_lock.locked()

    async def send(self, message: _Message) -> None:
        """
        Write one frame and wait for the transport buffer to drain.

        Raises:
            PeerUnreachable: if the connection is gone
        """
        frame = encode_message(message)
        async with self._send_lock:
            try:
                self.writer.write(frame)
                await self.writer.drain()
            except (ConnectionError, RuntimeError) as e:
                raise PeerUnreachable(f"Send to {self.peername} failed: {e}") from e

    async def send_error(self, exc: Exception) -> None:
        """Best-effort error report; a dead peer is not an error here."""
        try:
            await self.send(Error.from_exception(exc))
        except PeerUnreachable:
            pass

    async def recv(self, timeout: float | None = None) -> ControlMessage | None:
        """
        Read one frame.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely.

        Returns:
            The decoded message, or None on a clean EOF between frames.

        Raises:
            MalformedMessage: truncated, oversized or undecodable frame
            UnknownMessageType: unrecognised tag
            PeerUnreachable: timeout or connection reset
        """
        try:
            frame = await asyncio.wait_for(
                self.reader.readuntil(FRAME_DELIMITER), timeout=timeout
            )
        except asyncio.IncompleteReadError as e:
            if not e.partial:
                return None
            raise MalformedMessage(
                f"Connection closed mid-frame after {len(e.partial)} bytes"
            ) from e
        except asyncio.LimitOverrunError as e:
            raise MalformedMessage("Frame delimiter not found within limit") from e
        except asyncio.TimeoutError as e:
            raise PeerUnreachable(f"Timed out waiting for {self.peername}") from e
        except ConnectionError as e:
            raise PeerUnreachable(f"Connection to {self.peername} lost: {e}") from e

        return decode_message(frame)

    async def expect(self, *types: type[_Message], timeout: float | None = None):
        """
        Read one frame and require it to be one of ``types``.

        An ``error`` frame that was not asked for is raised as the exception
        it encodes.

        Raises:
            PeerUnreachable: EOF, timeout or reset
            ProtocolViolation: message of any other type
            TunnelError: peer reported an error
        """
        message = await self.recv(timeout=self.timeout if timeout is None else timeout)
        if message is None:
            raise PeerUnreachable(f"{self.peername} closed the connection")
        if isinstance(message, types):
            return message
        if isinstance(message, Error):
            raise message.to_exception()

        expected = ", ".join(t.model_fields["type"].default for t in types)
        raise ProtocolViolation(f"Expected {expected}, got {message.type}")

    async def close(self) -> None:
        """Close the underlying connection."""
        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout=1.0)
        except (OSError, asyncio.TimeoutError):
            pass
