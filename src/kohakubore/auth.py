"""
Authentication utilities for KohakuBore.

Challenge-response over a shared secret: the server issues a random nonce,
the client answers with HMAC-SHA256(SHA256(secret), nonce). The secret
itself never crosses the wire and a proof is bound to a single nonce.
"""

import hashlib
import hmac
import secrets

from kohakubore.exceptions import AuthenticationFailed, AuthenticationMismatch
from kohakubore.protocol import Authenticate, Challenge, ControlChannel
from kohakubore.utils.logger import get_logger

logger = get_logger(__name__)

NONCE_BYTES = 16


# =============================================================================
# Proof Primitives
# =============================================================================


def generate_nonce() -> str:
    """
    Generate a challenge nonce.

    Returns:
        128-bit random value, hex encoded (32 chars).
    """
    return secrets.token_hex(NONCE_BYTES)


def _derive_key(secret: bytes) -> bytes:
    return hashlib.sha256(secret).digest()


def prove(secret: bytes, nonce: str) -> str:
    """
    Compute the proof for a nonce.

    Args:
        secret: Shared secret.
        nonce: Nonce received in a challenge.

    Returns:
        Hex-encoded HMAC-SHA256 digest (64 chars).
    """
    return hmac.new(_derive_key(secret), nonce.encode("utf-8"), hashlib.sha256).hexdigest()


def verify(secret: bytes, nonce: str, proof: str) -> bool:
    """
    Check a proof in constant time.

    Args:
        secret: Shared secret.
        nonce: Nonce that was issued.
        proof: Proof returned by the peer.

    Returns:
        True if the proof was computed from the same secret and nonce.
    """
    # Compared as bytes: compare_digest rejects non-ASCII str input
    return hmac.compare_digest(
        prove(secret, nonce).encode("ascii"), proof.encode("utf-8")
    )


# =============================================================================
# Handshake Steps
# =============================================================================


class Authenticator:
    """Holds an optional secret and runs either side of the challenge."""

    def __init__(self, secret: bytes | None):
        self._secret = secret or None

    @property
    def enabled(self) -> bool:
        return self._secret is not None

    def challenge(self) -> str:
        return generate_nonce()

    def prove(self, nonce: str) -> str:
        if self._secret is None:
            raise AuthenticationMismatch(
                "Server requires a secret but none is configured"
            )
        return prove(self._secret, nonce)

    def verify(self, nonce: str, proof: str) -> bool:
        if self._secret is None:
            return False
        return verify(self._secret, nonce, proof)

    async def server_handshake(self, channel: ControlChannel) -> None:
        """
        Challenge the peer and check its answer.

        No-op when no secret is configured.

        Raises:
            AuthenticationFailed: wrong proof
            AuthenticationMismatch: peer could not answer (has no secret)
            ProtocolViolation: peer sent something other than authenticate
        """
        if not self.enabled:
            return

        nonce = self.challenge()
        await channel.send(Challenge(nonce=nonce))
        message = await channel.expect(Authenticate)

        if not self.verify(nonce, message.proof):
            logger.warning(f"[Auth {channel.peername}] Invalid proof, rejecting.")
            raise AuthenticationFailed("Invalid secret")

        logger.debug(f"[Auth {channel.peername}] Peer authenticated.")

    async def client_handshake(self, channel: ControlChannel, message) -> None:
        """
        Answer a challenge that the server sent.

        Args:
            channel: Control or data connection to the server.
            message: First message received after our opening frame.

        Raises:
            AuthenticationMismatch: secret presence differs between sides
        """
        if isinstance(message, Challenge):
            await channel.send(Authenticate(proof=self.prove(message.nonce)))
        elif self.enabled:
            raise AuthenticationMismatch(
                "A secret is configured but the server did not request authentication"
            )
