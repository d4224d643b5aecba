"""Tunnel exception classes."""

from kohakubore.models.enums import ErrorCode


class TunnelError(Exception):
    """Base exception for tunnel operations."""

    code: ErrorCode = ErrorCode.GENERIC


# =============================================================================
# Protocol Errors
# =============================================================================


class ProtocolError(TunnelError):
    """Peer sent something the control protocol does not allow."""

    pass


class MalformedMessage(ProtocolError):
    """Frame could not be decoded into a control message."""

    code = ErrorCode.MALFORMED_MESSAGE


class UnknownMessageType(ProtocolError):
    """Frame decoded but carries an unknown message tag."""

    code = ErrorCode.UNKNOWN_MESSAGE_TYPE


class ProtocolViolation(ProtocolError):
    """Valid message, but not allowed in the current session state."""

    code = ErrorCode.PROTOCOL_VIOLATION


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthenticationError(TunnelError):
    """Handshake authentication did not succeed."""

    pass


class AuthenticationMismatch(AuthenticationError):
    """Only one side of the connection has a secret configured."""

    code = ErrorCode.AUTHENTICATION_MISMATCH


class AuthenticationFailed(AuthenticationError):
    """Proof did not match the server's secret."""

    code = ErrorCode.AUTHENTICATION_FAILED


# =============================================================================
# Port Allocation Errors
# =============================================================================


class PortAllocationError(TunnelError):
    """Port lease could not be granted."""

    pass


class NoPortsAvailable(PortAllocationError):
    """Every port in the configured range is leased or unbindable."""

    code = ErrorCode.NO_PORTS_AVAILABLE


class PortOutOfRange(PortAllocationError):
    """Requested port lies outside the configured range."""

    code = ErrorCode.PORT_OUT_OF_RANGE


class PortInUse(PortAllocationError):
    """Requested port is already leased or bound by another process."""

    code = ErrorCode.PORT_IN_USE


# =============================================================================
# Connectivity Errors
# =============================================================================


class PeerUnreachable(TunnelError):
    """Peer could not be reached or stopped responding."""

    code = ErrorCode.PEER_UNREACHABLE


_ERRORS_BY_CODE: dict[ErrorCode, type[TunnelError]] = {
    cls.code: cls
    for cls in (
        MalformedMessage,
        UnknownMessageType,
        ProtocolViolation,
        AuthenticationMismatch,
        AuthenticationFailed,
        NoPortsAvailable,
        PortOutOfRange,
        PortInUse,
        PeerUnreachable,
    )
}


def error_from_code(code: str | None, reason: str) -> TunnelError:
    """
    Rebuild an exception from a wire ``error`` message.

    Args:
        code: ErrorCode value sent by the peer (may be missing or unknown).
        reason: Human readable reason sent by the peer.

    Returns:
        Exception instance matching the code, or a plain TunnelError.
    """
    try:
        error_code = ErrorCode(code)
    except ValueError:
        return TunnelError(reason)
    return _ERRORS_BY_CODE.get(error_code, TunnelError)(reason)
