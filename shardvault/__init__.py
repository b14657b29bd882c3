"""
shardvault: Local Credential Vault
Sharded, encrypted storage for third-party API secrets.

Each secret is split into N contiguous shards, and each shard is encrypted
with AES-256-GCM under its own subkey:
1. KeyDerivation: HKDF from a master secret and a per-record stored salt
2. Sharder      : N-of-N contiguous split and join
3. ShardCipher  : AES-256-GCM per shard, fails closed on tampering
4. MetadataStore: one JSON file, atomic whole-file rewrites
5. VaultService : store / retrieve / delete / list, with ownership checks

A note on "sharding": this is N-of-N partitioning, not threshold secret
sharing. Every shard is needed to rebuild a secret, and the split adds no
cryptographic strength beyond the per-shard authenticated encryption. It
only raises the number of files an attacker has to collect.

Usage:
    from shardvault import VaultService, VaultConfig
    vault = VaultService(master_secret, VaultConfig(vault_dir="./vault"))
    record_id = await vault.store(owner_id, "openai", b"sk-...")
    secret = await vault.retrieve(owner_id, record_id)
"""

from shardvault.config import VaultConfig
from shardvault.errors import (
    VaultError,
    NotFoundError,
    VerificationFailedError,
    CorruptMetadataError,
    VaultIOError,
    InvalidInputError,
)
from shardvault.keys import KeyDerivation, derive_master_secret, generate_salt
from shardvault.sharding import split as split_shards, join as join_shards
from shardvault.cipher import EncryptedShard
from shardvault.metadata import MetadataStore, VaultRecord, RecordSummary
from shardvault.service import VaultService

__version__ = "0.1.0"
__all__ = [
    "VaultService",
    "VaultConfig",
    "VaultRecord",
    "RecordSummary",
    "MetadataStore",
    "KeyDerivation",
    "EncryptedShard",
    "derive_master_secret",
    "generate_salt",
    "split_shards",
    "join_shards",
    "VaultError",
    "NotFoundError",
    "VerificationFailedError",
    "CorruptMetadataError",
    "VaultIOError",
    "InvalidInputError",
]
