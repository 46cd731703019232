"""
Channel security for the TCP transport: X25519 key agreement feeding
an AES-256-GCM cipher that seals every frame after the handshake.

Keys are ephemeral (per connection) and never persisted.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

from errors import TransportError

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
# AES-256 key size
KEY_SIZE = 32
HKDF_INFO = b"webdrop-v1-channel-key"


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """
    Generate an ephemeral X25519 keypair.

    Returns:
        (private_key, public_key_bytes) where public_key_bytes
        is 32 bytes suitable for transmission.
    """
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw,
        format=PublicFormat.Raw,
    )
    return private_key, public_bytes


class ChannelCipher:
    """Seals and opens frames for one established channel."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"Channel key must be {KEY_SIZE} bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_exchange(
        cls, private_key: X25519PrivateKey, peer_public_bytes: bytes
    ) -> "ChannelCipher":
        """Derive the channel key from an ECDH exchange via HKDF-SHA256."""
        try:
            peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
        except ValueError as e:
            raise TransportError(f"Invalid handshake key: {e}") from e
        shared_secret = private_key.exchange(peer_public_key)

        key = HKDF(
            algorithm=SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=HKDF_INFO,
        ).derive(shared_secret)
        return cls(key)

    def seal(self, plaintext: bytes) -> bytes:
        """Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)"""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def open(self, data: bytes) -> bytes:
        """Inverse of seal(); raises TransportError if the frame was tampered with."""
        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise TransportError("Frame failed authentication") from e
