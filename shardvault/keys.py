"""
Key Derivation
Per-record base keys and per-shard subkeys from a process-held master secret.

  Master secret + record salt + owner + service → Base Key (via HKDF)
  Base Key + shard index                        → Shard Key (via HKDF)
  Base Key                                      → Verification Tag (via SHA-256)

The salt is generated once when a record is created and stored with it.
Derivation is a pure function of (master secret, owner, service, salt):
nothing time-based or random enters it, so the same keys come back after
a restart.
"""

import hashlib
import os
import struct

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


PBKDF2_ITERATIONS = 600_000  # OWASP recommended minimum
SALT_SIZE = 16
KEY_SIZE = 32    # 256 bits
MIN_MASTER_SECRET_SIZE = 32

# Domain separation contexts
_BASE_CONTEXT = b"shardvault-record-key-v1"
_SHARD_CONTEXT = b"shardvault-shard-key-v1"
_VERIFY_CONTEXT = b"shardvault-verification-tag-v1"


def generate_salt() -> bytes:
    """Generate a fresh record salt. Called once per record, at store time."""
    return os.urandom(SALT_SIZE)


def derive_master_secret(passphrase: str, salt: bytes) -> bytes:
    """Derive master key material from a passphrase using PBKDF2."""
    if not passphrase:
        raise ValueError("Passphrase cannot be empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _length_prefixed(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack(">I", len(raw)) + raw


class KeyDerivation:
    """
    Derives record and shard keys from the master secret.

    Holds no state besides the master secret, so one instance can be
    shared by concurrent operations.

    Args:
        master_secret: At least 32 bytes of key material held by the process.
    """

    def __init__(self, master_secret: bytes):
        if not isinstance(master_secret, (bytes, bytearray)):
            raise ValueError("master_secret must be bytes")
        if len(master_secret) < MIN_MASTER_SECRET_SIZE:
            raise ValueError(
                f"master_secret must be at least {MIN_MASTER_SECRET_SIZE} bytes"
            )
        self._master_secret = bytes(master_secret)

    def derive(self, owner_id: str, service_name: str, salt: bytes) -> bytes:
        """
        Derive the base key for one record.

        Args:
            owner_id: The record owner.
            service_name: The record's service label.
            salt: The salt persisted in the record. Must be exactly SALT_SIZE bytes.

        Returns:
            32 bytes of key material, identical for identical inputs.
        """
        if len(salt) != SALT_SIZE:
            raise ValueError(f"salt must be exactly {SALT_SIZE} bytes, got {len(salt)}")

        # Length prefixes keep ("ab", "c") and ("a", "bc") apart
        info = _BASE_CONTEXT + _length_prefixed(owner_id) + _length_prefixed(service_name)
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            info=info,
        )
        return hkdf.derive(self._master_secret)

    @staticmethod
    def subkey(base_key: bytes, shard_index: int) -> bytes:
        """Derive the key for one shard. Each index gets an independent key."""
        if shard_index < 0:
            raise ValueError("shard_index cannot be negative")
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=_SHARD_CONTEXT + struct.pack(">I", shard_index),
        )
        return hkdf.derive(base_key)

    @staticmethod
    def verification_tag(base_key: bytes) -> str:
        """Digest of the base key, stored to detect derivation mismatches early."""
        return hashlib.sha256(_VERIFY_CONTEXT + base_key).hexdigest()
