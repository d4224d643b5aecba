"""
Tunnel server configuration for KohakuBore.

This module defines the configuration dataclass for the tunnel server,
providing a centralized place for all configurable parameters.

Configuration can be modified at runtime by importing the global config
instance and updating its attributes before starting the server.

Usage:
    from kohakubore.server.config import config

    # Modify configuration before starting
    config.MIN_PORT = 7000
    config.MAX_PORT = 7999
"""

from dataclasses import dataclass

from kohakubore.models.enums import LogLevel
from kohakubore.protocol import CONTROL_PORT, NETWORK_TIMEOUT


# =============================================================================
# Configuration Dataclass
# =============================================================================


@dataclass
class ServerConfig:
    """
    Tunnel server configuration.

    Attributes:
        BIND_ADDR: Address the control port listens on.
        CONTROL_PORT: Port clients connect to for control and data connections.
        BIND_TUNNELS: Address leased public ports listen on.
        MIN_PORT: Lowest port that may be leased (inclusive).
        MAX_PORT: Highest port that may be leased (inclusive).
        SECRET: Shared secret, or None to disable authentication.
        PENDING_TIMEOUT_SECONDS: How long an announced public connection waits
            for the client to accept it before being dropped.
        HEARTBEAT_TIMEOUT_MULTIPLE: Silent heartbeat intervals tolerated before
            a session is considered dead.
    """

    # -------------------------------------------------------------------------
    # Network Configuration
    # -------------------------------------------------------------------------

    BIND_ADDR: str = "0.0.0.0"
    CONTROL_PORT: int = CONTROL_PORT
    BIND_TUNNELS: str = "0.0.0.0"
    MIN_PORT: int = 1024
    MAX_PORT: int = 65535

    # -------------------------------------------------------------------------
    # Authentication Configuration
    # -------------------------------------------------------------------------

    SECRET: bytes | None = None

    # -------------------------------------------------------------------------
    # Timing Configuration
    # -------------------------------------------------------------------------

    NETWORK_TIMEOUT_SECONDS: float = NETWORK_TIMEOUT
    PENDING_TIMEOUT_SECONDS: float = 10.0
    PENDING_SWEEP_INTERVAL_SECONDS: float = 1.0
    HEARTBEAT_INTERVAL_SECONDS: float = 0.5
    HEARTBEAT_TIMEOUT_MULTIPLE: int = 4

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------

    LOG_LEVEL: LogLevel = LogLevel.INFO

    def validate(self) -> None:
        """
        Check the port range.

        Raises:
            ValueError: if the range is empty or outside 1-65535
        """
        if self.MIN_PORT > self.MAX_PORT:
            raise ValueError(
                f"Port range is empty ({self.MIN_PORT} > {self.MAX_PORT})"
            )
        if self.MIN_PORT < 1 or self.MAX_PORT > 65535:
            raise ValueError(
                f"Port range {self.MIN_PORT}-{self.MAX_PORT} is outside 1-65535"
            )


# =============================================================================
# Global Configuration Instance
# =============================================================================

config = ServerConfig()
