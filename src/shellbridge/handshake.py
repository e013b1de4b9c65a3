"""
Handshake — ephemeral key exchange and challenge signatures.

Both devices publish a secp256k1 public key when they register with the
relay. When the relay introduces them, each side derives the same shared
secret with ECDH and signs a challenge with HMAC-SHA256. The peer's
signature is checked in constant time before anything is trusted; the relay
only ever sees public keys and signatures.

Wire formats:
    public key: hex of the uncompressed X9.62 point (65 bytes, 130 chars)
    challenge:  32 random bytes, hex
    signature:  HMAC-SHA256(shared_secret, challenge), hex
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.constant_time import bytes_eq

from shellbridge.core.errors import HandshakeFailed

logger = logging.getLogger(__name__)

_CURVE = ec.SECP256K1()


@dataclass(frozen=True)
class KeyPair:
    private_key: ec.EllipticCurvePrivateKey
    public_key: str  # hex, uncompressed point


def generate_key_pair() -> KeyPair:
    private_key = ec.generate_private_key(_CURVE)
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return KeyPair(private_key=private_key, public_key=public_bytes.hex())


def generate_challenge() -> str:
    return secrets.token_hex(32)


def derive_shared_secret(
    private_key: ec.EllipticCurvePrivateKey, peer_public_key: str
) -> bytes:
    """ECDH over secp256k1. Returns the raw x-coordinate of the shared point.

    Raises HandshakeFailed when the peer key is not a valid point.
    """
    try:
        peer_point = bytes.fromhex(peer_public_key)
        peer_key = ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, peer_point)
        return private_key.exchange(ec.ECDH(), peer_key)
    except (ValueError, TypeError) as e:
        raise HandshakeFailed(f"Could not derive shared secret: {e}") from e


def sign(challenge: str, secret: bytes) -> str:
    return hmac.new(secret, challenge.encode("utf-8"), hashlib.sha256).hexdigest()


def verify(challenge: str, signature: str, secret: bytes) -> bool:
    """Constant-time signature check. Malformed hex is simply a mismatch."""
    try:
        received = bytes.fromhex(signature)
    except (ValueError, TypeError):
        return False
    expected = bytes.fromhex(sign(challenge, secret))
    if len(received) != len(expected):
        return False
    return bytes_eq(received, expected)


# ─── Pairing State ──────────────────────────────────────────────


class HandshakeState(str, enum.Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Handshake:
    """Tracks one pairing attempt with one peer.

    respond() handles `handshake:initiate`, verify_peer() handles
    `handshake:verify`. Once FAILED, the attempt stays failed until reset().
    """

    def __init__(self, key_pair: Optional[KeyPair]):
        self._key_pair = key_pair
        self.state = HandshakeState.PENDING
        self.peer_id: Optional[str] = None
        self.peer_public_key: Optional[str] = None
        self.shared_secret: Optional[bytes] = None
        self._challenge: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.state == HandshakeState.CONFIRMED

    def reset(self) -> None:
        self.state = HandshakeState.PENDING
        self.peer_id = None
        self.peer_public_key = None
        self.shared_secret = None
        self._challenge = None

    def respond(self, peer_id: str, peer_public_key: str, challenge: str) -> str:
        """Derive the shared secret and sign the relay's challenge."""
        self.reset()
        self.peer_id = peer_id

        if self._key_pair is None:
            self.state = HandshakeState.FAILED
            raise HandshakeFailed("No local key pair", peer_id)
        if not peer_public_key or not challenge:
            self.state = HandshakeState.FAILED
            raise HandshakeFailed("Missing peer key or challenge", peer_id)

        try:
            secret = derive_shared_secret(self._key_pair.private_key, peer_public_key)
        except HandshakeFailed as e:
            self.state = HandshakeState.FAILED
            raise HandshakeFailed(e.message, peer_id) from e

        self.peer_public_key = peer_public_key
        self.shared_secret = secret
        self._challenge = challenge
        self.state = HandshakeState.RESPONDED
        logger.debug(f"Derived shared secret with {peer_id}")
        return sign(challenge, secret)

    def verify_peer(
        self, peer_id: str, signature: str, challenge: Optional[str] = None
    ) -> bool:
        """Check the peer's signature.

        Uses the challenge the relay forwarded alongside the signature when
        present, otherwise the one this side signed.
        """
        if self.state != HandshakeState.RESPONDED or self.shared_secret is None:
            logger.warning(f"Signature from {peer_id} before our response; rejecting")
            self.state = HandshakeState.FAILED
            return False

        if peer_id != self.peer_id:
            logger.warning(f"Signature from unexpected peer {peer_id} (expected {self.peer_id})")
            self.state = HandshakeState.FAILED
            return False

        target = challenge or self._challenge or ""
        if not verify(target, signature or "", self.shared_secret):
            logger.warning(f"Signature mismatch from {peer_id}")
            self.state = HandshakeState.FAILED
            return False

        self.state = HandshakeState.CONFIRMED
        logger.info(f"Peer {peer_id} verified")
        return True
