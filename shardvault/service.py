"""
Vault Service
The façade the rest of the application talks to: store, retrieve, delete, list.

Flow for storing a secret:
1. Generate a record id and a record salt (once, persisted)
2. Derive the base key, then one subkey per shard
3. Split the secret into N contiguous shards
4. Encrypt each shard (AES-256-GCM, bound to its record and position)
5. Write every shard file
6. Write metadata last. Metadata presence is the commit point

Flow for retrieving:
1. Load metadata; absent or foreign records are both NotFoundError
2. Re-derive the base key from the stored salt and check the verification tag
3. Read and decrypt every shard; any failure aborts the whole retrieval
4. Join the shards

A store that dies between steps 5 and 6 leaves orphaned shard files behind.
reconcile() sweeps them up; run it periodically, off the hot path.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import errno
import hmac
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

from shardvault import cipher, sharding
from shardvault.config import VaultConfig
from shardvault.errors import (
    InvalidInputError,
    NotFoundError,
    VaultIOError,
    VerificationFailedError,
)
from shardvault.keys import SALT_SIZE, KeyDerivation, derive_master_secret, generate_salt
from shardvault.metadata import MetadataStore, RecordSummary, VaultRecord, shard_filename

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 1024

# errno values worth another attempt
_TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR, errno.EBUSY}


def _shard_context(record_id: str, index: int) -> bytes:
    """Associated data tying a shard to its record and position."""
    return f"{record_id}:{index}".encode("utf-8")


def _write_shard(path: Path, blob: bytes) -> None:
    # O_EXCL: a shard file belongs to exactly one record
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(blob)
        f.flush()
        os.fsync(f.fileno())


def _write_salt(path: Path, salt: bytes) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(base64.b64encode(salt).decode())
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def _read_shard(path: Path) -> bytes:
    return path.read_bytes()


def _remove_shard(path: Path) -> None:
    path.unlink(missing_ok=True)


class _RecordLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class VaultService:
    """
    Sharded, encrypted credential vault over a local directory.

    Build one per vault and pass it to whatever needs it. All state lives on
    disk except the master secret and the locks that serialise writers.

    Args:
        master_secret: Process-held key material, at least 32 bytes.
        config: Vault settings. Defaults to VaultConfig().
    """

    def __init__(self, master_secret: bytes, config: VaultConfig | None = None):
        self.config = config or VaultConfig()
        self._keys = KeyDerivation(master_secret)

        self.config.vault_dir.mkdir(parents=True, exist_ok=True)
        self.config.shard_dir.mkdir(parents=True, exist_ok=True)
        self._metadata = MetadataStore(self.config.metadata_path)

        # Serialises every access to the metadata file; a read can quarantine it
        self._metadata_lock = asyncio.Lock()
        # Serialises retrieve/delete on the same record. Entries live only
        # while some caller holds or waits on them
        self._record_locks: dict[str, _RecordLock] = {}
        # Records whose shards are written but whose metadata is not yet
        self._pending: set[str] = set()

    @classmethod
    def from_passphrase(cls, passphrase: str, config: VaultConfig | None = None) -> VaultService:
        """
        Open a vault keyed by a passphrase instead of raw key material.

        The vault-level PBKDF2 salt is created on first use and kept in
        the vault directory.
        """
        config = config or VaultConfig()
        config.vault_dir.mkdir(parents=True, exist_ok=True)

        salt_file = config.salt_path
        if salt_file.exists():
            try:
                salt = base64.b64decode(salt_file.read_text().strip(), validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"Vault salt file {salt_file} is not valid base64") from e
            if len(salt) != SALT_SIZE:
                raise ValueError(
                    f"Vault salt file {salt_file} holds {len(salt)} bytes, expected {SALT_SIZE}"
                )
        else:
            salt = generate_salt()
            _write_salt(salt_file, salt)

        return cls(derive_master_secret(passphrase, salt), config)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextlib.asynccontextmanager
    async def _record_lock(self, record_id: str):
        entry = self._record_locks.get(record_id)
        if entry is None:
            entry = self._record_locks[record_id] = _RecordLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._record_locks[record_id]

    async def _io(self, func, *args):
        """Run blocking file I/O off the event loop, retrying transient errors."""
        delay = self.config.retry_delay
        for attempt in range(1, self.config.io_retries + 1):
            try:
                return await asyncio.to_thread(func, *args)
            except OSError as e:
                if e.errno not in _TRANSIENT_ERRNOS or attempt == self.config.io_retries:
                    raise
                logger.debug("Transient I/O error (%s), attempt %d", e, attempt)
                await asyncio.sleep(delay)
                delay *= 2

    @staticmethod
    def _owner(owner_id) -> str:
        if owner_id is None:
            raise InvalidInputError("owner_id is required")
        owner = str(owner_id)
        if not owner:
            raise InvalidInputError("owner_id cannot be empty")
        return owner

    def _check_service_name(self, service_name) -> str:
        if not isinstance(service_name, str) or not service_name.strip():
            raise InvalidInputError("service_name cannot be empty")
        if len(service_name) > self.config.max_service_name_length:
            raise InvalidInputError(
                f"service_name exceeds {self.config.max_service_name_length} characters"
            )
        return service_name

    def _check_secret(self, secret) -> bytes:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        elif isinstance(secret, (bytes, bytearray, memoryview)):
            secret = bytes(secret)
        else:
            raise InvalidInputError("secret must be bytes or str")
        if len(secret) > self.config.max_secret_bytes:
            raise InvalidInputError(
                f"secret is {len(secret)} bytes, limit is {self.config.max_secret_bytes}"
            )
        return secret

    @staticmethod
    def _check_description(description) -> str | None:
        if description is None:
            return None
        if not isinstance(description, str):
            raise InvalidInputError("description must be a string")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvalidInputError(f"description exceeds {MAX_DESCRIPTION_LENGTH} characters")
        return description

    async def _load_owned(self, owner: str, record_id: str) -> VaultRecord:
        """Fetch a record the caller owns. Absent and foreign look the same."""
        try:
            async with self._metadata_lock:
                record = await self._io(self._metadata.get, record_id)
        except NotFoundError:
            record = None
        except OSError as e:
            raise VaultIOError("Failed to read vault metadata") from e

        if record is None or not hmac.compare_digest(
            record.owner_id.encode("utf-8"), owner.encode("utf-8")
        ):
            raise NotFoundError(f"Record {record_id} not found")
        return record

    async def _discard_shards(self, refs: list[str]) -> None:
        for ref in refs:
            try:
                await self._io(_remove_shard, self.config.shard_dir / ref)
            except OSError as e:
                logger.warning("Could not remove shard %s after failed store: %s", ref, e)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def store(self, owner_id, service_name: str, secret: bytes | str,
                    description: str | None = None) -> str:
        """
        Split, encrypt and store a secret.

        Args:
            owner_id: Who may later retrieve or delete it.
            service_name: Label such as "openai". Not secret.
            secret: The credential. str is UTF-8 encoded.
            description: Optional note kept in metadata. Not secret.

        Returns:
            The new record id.

        Raises:
            InvalidInputError: Empty service name or owner, oversized secret.
            VaultIOError: Shard or metadata write failed.
        """
        owner = self._owner(owner_id)
        service_name = self._check_service_name(service_name)
        secret = self._check_secret(secret)
        description = self._check_description(description)

        record_id = str(uuid.uuid4())
        salt = generate_salt()
        base_key = self._keys.derive(owner, service_name, salt)

        refs = []
        blobs = []
        for index, piece in enumerate(sharding.split(secret, self.config.shard_count)):
            shard_key = self._keys.subkey(base_key, index)
            encrypted = cipher.encrypt(shard_key, piece, _shard_context(record_id, index))
            refs.append(shard_filename(record_id, index))
            blobs.append(encrypted.to_bytes())

        record = VaultRecord(
            record_id=record_id,
            owner_id=owner,
            service_name=service_name,
            salt=salt,
            shard_refs=refs,
            verification_tag=self._keys.verification_tag(base_key),
            created_at=datetime.now(timezone.utc).isoformat(),
            description=description,
        )

        self._pending.add(record_id)
        try:
            try:
                for ref, blob in zip(refs, blobs):
                    await self._io(_write_shard, self.config.shard_dir / ref, blob)
            except OSError as e:
                await self._discard_shards(refs)
                raise VaultIOError(f"Failed to write shards for record {record_id}") from e

            try:
                async with self._metadata_lock:
                    await self._io(self._metadata.put, record)
            except OSError as e:
                logger.warning(
                    "Metadata write failed for record %s; %d shard files left for reconcile",
                    record_id, len(refs),
                )
                raise VaultIOError(f"Failed to commit metadata for record {record_id}") from e
        finally:
            self._pending.discard(record_id)

        logger.info("Stored record %s (service=%s, shards=%d)", record_id, service_name, len(refs))
        return record_id

    async def retrieve(self, owner_id, record_id: str) -> bytes:
        """
        Reassemble a stored secret.

        Raises:
            NotFoundError: No such record, or it belongs to someone else.
            VerificationFailedError: Key mismatch, or a shard is missing,
                truncated or tampered with.
            VaultIOError: A file could not be read.
        """
        owner = self._owner(owner_id)
        record_id = str(record_id)

        async with self._record_lock(record_id):
            record = await self._load_owned(owner, record_id)

            base_key = self._keys.derive(record.owner_id, record.service_name, record.salt)
            if not hmac.compare_digest(self._keys.verification_tag(base_key), record.verification_tag):
                logger.warning("Key derivation mismatch for record %s", record_id)
                raise VerificationFailedError(
                    f"Derived key does not match record {record_id}"
                )

            pieces = []
            for index, ref in enumerate(record.shard_refs):
                try:
                    blob = await self._io(_read_shard, self.config.shard_dir / ref)
                except FileNotFoundError as e:
                    logger.warning("Shard %d of record %s is missing", index, record_id)
                    raise VerificationFailedError(
                        f"Shard {index} of record {record_id} is missing"
                    ) from e
                except OSError as e:
                    raise VaultIOError(f"Failed to read shard {index} of record {record_id}") from e

                shard_key = self._keys.subkey(base_key, index)
                try:
                    pieces.append(cipher.decrypt(
                        shard_key,
                        cipher.EncryptedShard.from_bytes(blob),
                        _shard_context(record_id, index),
                    ))
                except VerificationFailedError:
                    logger.warning("Shard %d of record %s failed verification", index, record_id)
                    raise

        return sharding.join(pieces)

    async def delete(self, owner_id, record_id: str) -> bool:
        """
        Remove a record's shard files and then its metadata.

        Returns:
            True if deleted, False if the record did not exist or is not
            the caller's.
        """
        owner = self._owner(owner_id)
        record_id = str(record_id)

        async with self._record_lock(record_id):
            try:
                record = await self._load_owned(owner, record_id)
            except NotFoundError:
                return False

            for ref in record.shard_refs:
                try:
                    await self._io(_remove_shard, self.config.shard_dir / ref)
                except OSError as e:
                    raise VaultIOError(f"Failed to remove shard {ref}") from e

            try:
                async with self._metadata_lock:
                    await self._io(self._metadata.remove, record_id)
            except OSError as e:
                raise VaultIOError(f"Failed to remove metadata for record {record_id}") from e

        logger.info("Deleted record %s", record_id)
        return True

    async def list(self, owner_id) -> list[RecordSummary]:
        """Summaries of the caller's records, oldest first. Nothing is decrypted."""
        owner = self._owner(owner_id)
        try:
            async with self._metadata_lock:
                records = await self._io(self._metadata.list_by_owner, owner)
        except OSError as e:
            raise VaultIOError("Failed to read vault metadata") from e
        return [record.summary() for record in records]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def _sweep_orphans(self, referenced: set[str], pending: set[str]) -> dict:
        now = time.time()
        report = {
            "scanned": 0,
            "referenced": 0,
            "removed": [],
            "skipped": [],
        }

        for path in sorted(self.config.shard_dir.iterdir()):
            if not path.is_file():
                continue
            report["scanned"] += 1

            if path.name in referenced:
                report["referenced"] += 1
                continue

            record_id = path.name.split(".", 1)[0]
            if record_id in pending:
                report["skipped"].append(path.name)
                continue

            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age < self.config.orphan_grace_seconds:
                report["skipped"].append(path.name)
                continue

            path.unlink(missing_ok=True)
            report["removed"].append(path.name)

        return report

    async def reconcile(self) -> dict:
        """
        Remove shard files that no committed record references.

        Files younger than orphan_grace_seconds, and files of stores still
        in flight, are left alone.

        Returns:
            Report with counts of scanned and referenced files and the names
            of removed and skipped ones.
        """
        async with self._metadata_lock:
            try:
                records = await self._io(self._metadata.all_records)
                referenced = {ref for record in records for ref in record.shard_refs}
                report = await asyncio.to_thread(
                    self._sweep_orphans, referenced, set(self._pending)
                )
            except OSError as e:
                raise VaultIOError("Reconciliation sweep failed") from e

        if report["removed"]:
            logger.info("Reconcile removed %d orphaned shard files", len(report["removed"]))
        return report

    def _disk_usage(self) -> tuple[int, int]:
        files = [p for p in self.config.shard_dir.iterdir() if p.is_file()]
        return len(files), sum(p.stat().st_size for p in files)

    async def stats(self) -> dict:
        """Get vault statistics."""
        try:
            async with self._metadata_lock:
                records = await self._io(self._metadata.all_records)
            shard_files, total_bytes = await self._io(self._disk_usage)
        except OSError as e:
            raise VaultIOError("Failed to read vault statistics") from e

        return {
            "vault_dir": str(self.config.vault_dir),
            "records": len(records),
            "shard_count": self.config.shard_count,
            "shard_files": shard_files,
            "total_bytes_on_disk": total_bytes,
        }
