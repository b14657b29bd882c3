"""
Vault configuration.

A VaultConfig is built once by the surrounding application and handed to
VaultService. It is validated on construction: a bad value is a programmer
error and raises ValueError before any record is touched.
"""

from dataclasses import dataclass
from pathlib import Path


DEFAULT_VAULT_DIR = "./vault-encrypted"
DEFAULT_SHARD_COUNT = 3
DEFAULT_MAX_SECRET_BYTES = 65536  # 64 KB
DEFAULT_MAX_SERVICE_NAME_LENGTH = 255

METADATA_FILENAME = "metadata.json"
SHARD_DIRNAME = "shards"
SALT_FILENAME = ".vault-salt"


@dataclass(frozen=True)
class VaultConfig:
    """
    Settings for one vault on disk.

    Args:
        vault_dir: Root directory holding metadata and shard files.
        shard_count: N, the number of shards every secret is split into.
        max_secret_bytes: Largest secret accepted by store().
        max_service_name_length: Longest service label accepted by store().
        io_retries: Attempts for a file operation hitting a transient error.
        retry_delay: Base delay in seconds between retries (doubles each time).
        orphan_grace_seconds: Minimum age of an unreferenced shard file
            before reconcile() removes it.
    """
    vault_dir: Path = Path(DEFAULT_VAULT_DIR)
    shard_count: int = DEFAULT_SHARD_COUNT
    max_secret_bytes: int = DEFAULT_MAX_SECRET_BYTES
    max_service_name_length: int = DEFAULT_MAX_SERVICE_NAME_LENGTH
    io_retries: int = 3
    retry_delay: float = 0.05
    orphan_grace_seconds: float = 300.0

    def __post_init__(self):
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "vault_dir", Path(self.vault_dir))

        if isinstance(self.shard_count, bool) or not isinstance(self.shard_count, int):
            raise ValueError("shard_count must be an integer")
        if self.shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        if self.max_secret_bytes < 0:
            raise ValueError("max_secret_bytes cannot be negative")
        if self.max_service_name_length < 1:
            raise ValueError("max_service_name_length must be at least 1")
        if self.io_retries < 1:
            raise ValueError("io_retries must be at least 1")
        if self.retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")
        if self.orphan_grace_seconds < 0:
            raise ValueError("orphan_grace_seconds cannot be negative")

    @property
    def metadata_path(self) -> Path:
        return self.vault_dir / METADATA_FILENAME

    @property
    def shard_dir(self) -> Path:
        return self.vault_dir / SHARD_DIRNAME

    @property
    def salt_path(self) -> Path:
        return self.vault_dir / SALT_FILENAME
