"""
Tunnel client configuration.

A global Config instance that can be modified at runtime.
"""

from dataclasses import dataclass

from kohakubore.models.enums import LogLevel
from kohakubore.protocol import CONTROL_PORT, NETWORK_TIMEOUT


@dataclass
class ClientConfig:
    """Tunnel client configuration."""

    # Local Service
    LOCAL_HOST: str = "localhost"
    LOCAL_PORT: int = 0

    # Remote Server
    SERVER_ADDRESS: str = "127.0.0.1"
    CONTROL_PORT: int = CONTROL_PORT
    REQUESTED_PORT: int = 0  # 0 lets the server choose

    # Authentication
    SECRET: bytes | None = None

    # Timing Configuration
    NETWORK_TIMEOUT_SECONDS: float = NETWORK_TIMEOUT
    HEARTBEAT_INTERVAL_SECONDS: float = 0.5

    # Logging Configuration
    LOG_LEVEL: LogLevel = LogLevel.INFO

    def get_local_address(self) -> str:
        """Get the local service address."""
        return f"{self.LOCAL_HOST}:{self.LOCAL_PORT}"

    def get_server_address(self) -> str:
        """Get the server control address."""
        return f"{self.SERVER_ADDRESS}:{self.CONTROL_PORT}"


# Global config instance
config = ClientConfig()
