"""
Shard Cipher
AES-256-GCM encryption of a single shard.

On disk a shard is nonce || tag || ciphertext. A fresh random nonce is drawn
for every encryption, and every shard has its own subkey, so a (key, nonce)
pair is never reused.

Decryption fails closed: a wrong key, a flipped bit anywhere in the blob, or
a truncated file raises VerificationFailedError. No partial plaintext is
ever returned.
"""

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shardvault.errors import VerificationFailedError


NONCE_SIZE = 12  # AES-256-GCM standard
TAG_SIZE = 16    # 128-bit GCM tag
HEADER_SIZE = NONCE_SIZE + TAG_SIZE


@dataclass
class EncryptedShard:
    """One encrypted shard as stored on disk."""
    nonce: bytes
    tag: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        """Serialize to the on-disk layout."""
        return self.nonce + self.tag + self.ciphertext

    @classmethod
    def from_bytes(cls, blob: bytes) -> "EncryptedShard":
        """Parse the on-disk layout. Anything shorter than the header cannot be a shard."""
        if len(blob) < HEADER_SIZE:
            raise VerificationFailedError(
                f"Shard is {len(blob)} bytes, shorter than the {HEADER_SIZE}-byte header"
            )
        return cls(
            nonce=blob[:NONCE_SIZE],
            tag=blob[NONCE_SIZE:HEADER_SIZE],
            ciphertext=blob[HEADER_SIZE:],
        )


def encrypt(shard_key: bytes, plaintext: bytes, associated_data: bytes | None = None) -> EncryptedShard:
    """
    Encrypt one shard.

    Args:
        shard_key: 32-byte subkey for this shard.
        plaintext: The shard bytes (may be empty).
        associated_data: Authenticated but unencrypted context, e.g. the
            shard's record id and position.

    Returns:
        EncryptedShard with a fresh nonce.
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(shard_key)
    # AESGCM appends the tag to the ciphertext
    sealed = aesgcm.encrypt(nonce, plaintext, associated_data)
    return EncryptedShard(
        nonce=nonce,
        tag=sealed[-TAG_SIZE:],
        ciphertext=sealed[:-TAG_SIZE],
    )


def decrypt(shard_key: bytes, shard: EncryptedShard, associated_data: bytes | None = None) -> bytes:
    """
    Decrypt and authenticate one shard.

    Raises:
        VerificationFailedError: On any tag mismatch.
    """
    if len(shard.nonce) != NONCE_SIZE or len(shard.tag) != TAG_SIZE:
        raise VerificationFailedError("Shard nonce or tag has the wrong length")

    aesgcm = AESGCM(shard_key)
    try:
        return aesgcm.decrypt(shard.nonce, shard.ciphertext + shard.tag, associated_data)
    except InvalidTag as e:
        raise VerificationFailedError("Shard failed authentication") from e
