"""
Enumeration types for KohakuBore.

This module defines the enumeration types shared by the tunnel client and
server for state tracking, wire error codes and configuration options.
"""

from enum import Enum


# =============================================================================
# Session-Related Enums
# =============================================================================


class ServerSessionState(str, Enum):
    """
    Server-side control session lifecycle.

    State transitions:
        AWAITING_HELLO -> AWAITING_AUTH (secret configured) -> ACTIVE -> CLOSED
        AWAITING_HELLO -> ACTIVE (no secret)
        Any -> CLOSED (EOF, error, heartbeat timeout, shutdown)
    """

    AWAITING_HELLO = "awaiting_hello"
    AWAITING_AUTH = "awaiting_auth"
    ACTIVE = "active"
    CLOSED = "closed"


class ClientSessionState(str, Enum):
    """
    Client-side control session lifecycle.

    State transitions:
        CONNECTING -> HANDSHAKING -> ACTIVE -> CLOSED
    """

    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSED = "closed"


# =============================================================================
# Wire Enums
# =============================================================================


class ErrorCode(str, Enum):
    """
    Machine-readable error kind carried in the ``error`` control message.

    The client maps these back onto the matching exception class so that
    handshake failures surface with their specific reason.
    """

    GENERIC = "error"
    MALFORMED_MESSAGE = "malformed_message"
    UNKNOWN_MESSAGE_TYPE = "unknown_message_type"
    PROTOCOL_VIOLATION = "protocol_violation"
    AUTHENTICATION_MISMATCH = "authentication_mismatch"
    AUTHENTICATION_FAILED = "authentication_failed"
    NO_PORTS_AVAILABLE = "no_ports_available"
    PORT_OUT_OF_RANGE = "port_out_of_range"
    PORT_IN_USE = "port_in_use"
    PEER_UNREACHABLE = "peer_unreachable"


# =============================================================================
# Configuration Enums
# =============================================================================


class LogLevel(str, Enum):
    """
    Logging verbosity levels for KohakuBore components.

    Levels (from most to least verbose):
        - FULL: Complete trace with detailed stack information
        - DEBUG: Debug messages and above
        - INFO: Informational messages and above
        - WARNING: Only warnings and errors
    """

    FULL = "full"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
