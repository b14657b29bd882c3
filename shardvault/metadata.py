"""
Metadata Store
Durable map of record id → record metadata, held in one JSON file.

File format:
  {"version": 1, "records": {"<record_id>": {...record fields...}}}

Every write rewrites the whole file through a temporary sibling and
os.replace(), so readers only ever see a complete store. A missing file is
an empty store. An unreadable file is moved aside and the store starts over
empty, with a warning; the triggering call carries on.

Records hold no plaintext and no key material: only the salt, the shard
file names, and a digest of the derived key.
"""

import base64
import binascii
import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from shardvault.errors import CorruptMetadataError, NotFoundError
from shardvault.keys import SALT_SIZE

logger = logging.getLogger(__name__)

STORE_VERSION = 1

_REQUIRED_FIELDS = {
    "record_id",
    "owner_id",
    "service_name",
    "salt",
    "shard_refs",
    "verification_tag",
    "created_at",
}
_OPTIONAL_FIELDS = {"description"}
_TAG_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def shard_filename(record_id: str, index: int) -> str:
    """Deterministic shard file name for (record_id, index)."""
    return f"{record_id}.{index}.shard"


@dataclass
class VaultRecord:
    """Metadata for one stored secret."""
    record_id: str
    owner_id: str
    service_name: str
    salt: bytes
    shard_refs: list[str]
    verification_tag: str
    created_at: str
    description: str | None = None

    def to_dict(self) -> dict:
        data = {
            "record_id": self.record_id,
            "owner_id": self.owner_id,
            "service_name": self.service_name,
            "salt": base64.b64encode(self.salt).decode(),
            "shard_refs": list(self.shard_refs),
            "verification_tag": self.verification_tag,
            "created_at": self.created_at,
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "VaultRecord":
        """
        Build a record from its stored form, rejecting any unexpected shape.

        Raises:
            CorruptMetadataError: On missing or unknown fields, wrong types,
                a bad salt, or shard refs that do not match the record id.
        """
        if not isinstance(data, dict):
            raise CorruptMetadataError("Record is not an object")

        keys = set(data)
        missing = _REQUIRED_FIELDS - keys
        if missing:
            raise CorruptMetadataError(f"Record is missing fields: {sorted(missing)}")
        unknown = keys - _REQUIRED_FIELDS - _OPTIONAL_FIELDS
        if unknown:
            raise CorruptMetadataError(f"Record has unknown fields: {sorted(unknown)}")

        for name in ("record_id", "owner_id", "service_name", "verification_tag", "created_at", "salt"):
            if not isinstance(data[name], str):
                raise CorruptMetadataError(f"Record field '{name}' must be a string")
        description = data.get("description")
        if description is not None and not isinstance(description, str):
            raise CorruptMetadataError("Record field 'description' must be a string")

        try:
            salt = base64.b64decode(data["salt"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise CorruptMetadataError("Record salt is not valid base64") from e
        if len(salt) != SALT_SIZE:
            raise CorruptMetadataError(f"Record salt must be {SALT_SIZE} bytes")

        if not _TAG_PATTERN.match(data["verification_tag"]):
            raise CorruptMetadataError("Record verification tag is malformed")

        # Record ids are always canonical uuid4 strings; shard paths are built from them
        record_id = data["record_id"]
        try:
            canonical = str(uuid.UUID(record_id))
        except ValueError as e:
            raise CorruptMetadataError("Record id is not a UUID") from e
        if canonical != record_id:
            raise CorruptMetadataError("Record id is not a canonical UUID")

        refs = data["shard_refs"]
        if not isinstance(refs, list) or not refs:
            raise CorruptMetadataError("Record shard_refs must be a non-empty list")
        for index, ref in enumerate(refs):
            # Refs are always derived from the record id; anything else
            # (including a path) means the file was edited
            if ref != shard_filename(record_id, index):
                raise CorruptMetadataError(f"Record shard ref {index} does not match its record")

        return cls(
            record_id=record_id,
            owner_id=data["owner_id"],
            service_name=data["service_name"],
            salt=salt,
            shard_refs=list(refs),
            verification_tag=data["verification_tag"],
            created_at=data["created_at"],
            description=description,
        )

    def summary(self) -> "RecordSummary":
        return RecordSummary(
            record_id=self.record_id,
            service_name=self.service_name,
            created_at=self.created_at,
            description=self.description,
        )


@dataclass
class RecordSummary:
    """What list() returns: identifying metadata, nothing secret."""
    record_id: str
    service_name: str
    created_at: str
    description: str | None = None

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "service_name": self.service_name,
            "created_at": self.created_at,
            "description": self.description,
        }


class MetadataStore:
    """
    JSON-file-backed record map.

    The store keeps nothing in memory between calls: each operation reads
    the file, and each mutation writes it back whole. Callers that mutate
    concurrently must serialise put() and remove() themselves.

    Args:
        path: Location of the metadata file. Its directory is created if needed.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------
    def _load(self) -> dict[str, VaultRecord]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            logger.debug("No metadata file at %s, starting empty", self.path)
            return {}

        try:
            document = json.loads(raw.decode("utf-8"))
            if not isinstance(document, dict):
                raise CorruptMetadataError("Top level is not an object")
            if document.get("version") != STORE_VERSION:
                raise CorruptMetadataError(f"Unsupported store version: {document.get('version')!r}")
            entries = document.get("records")
            if not isinstance(entries, dict):
                raise CorruptMetadataError("'records' is not an object")
        except (ValueError, CorruptMetadataError) as e:
            if self._quarantine(raw, e):
                return {}
            # Replaced by a fresh commit since it was read
            return self._load()

        records = {}
        for record_id, entry in entries.items():
            try:
                record = VaultRecord.from_dict(entry)
            except CorruptMetadataError as e:
                logger.warning("Skipping invalid metadata record %s: %s", record_id, e)
                continue
            if record.record_id != record_id:
                logger.warning("Skipping metadata record %s: id does not match its key", record_id)
                continue
            records[record_id] = record
        return records

    def _quarantine(self, raw: bytes, error: Exception) -> bool:
        """
        Move an unreadable store aside so the next write starts clean.

        Only the exact bytes that failed to parse are moved. Returns False
        if the file changed in the meantime and was left in place.
        """
        try:
            current = self.path.read_bytes()
        except FileNotFoundError:
            return True
        if current != raw:
            logger.debug("Metadata store %s changed while loading, leaving it in place", self.path)
            return False

        backup = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time() * 1000)}")
        try:
            os.replace(self.path, backup)
        except FileNotFoundError:
            return True
        logger.warning(
            "Metadata store %s is unreadable (%s); moved to %s and reinitialised empty",
            self.path, error, backup,
        )
        return True

    def _save(self, records: dict[str, VaultRecord]) -> None:
        document = {
            "version": STORE_VERSION,
            "records": {rid: record.to_dict() for rid, record in records.items()},
        }
        payload = json.dumps(document, indent=2, sort_keys=True)

        # Write to a temp file first, then rename for atomicity
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            # Clean up temp file on failure
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def put(self, record: VaultRecord) -> None:
        """Insert a record. Record ids are unique; an existing id is replaced."""
        records = self._load()
        records[record.record_id] = record
        self._save(records)

    def get(self, record_id: str) -> VaultRecord:
        """
        Look up one record.

        Raises:
            NotFoundError: If no such record exists.
        """
        record = self._load().get(record_id)
        if record is None:
            raise NotFoundError(record_id)
        return record

    def remove(self, record_id: str) -> bool:
        """Remove a record. Returns True if it existed."""
        records = self._load()
        if records.pop(record_id, None) is None:
            return False
        self._save(records)
        return True

    def list_by_owner(self, owner_id: str) -> list[VaultRecord]:
        """All records belonging to one owner, oldest first."""
        owned = [r for r in self._load().values() if r.owner_id == owner_id]
        return sorted(owned, key=lambda r: (r.created_at, r.record_id))

    def all_records(self) -> list[VaultRecord]:
        """Every committed record, for maintenance sweeps."""
        return list(self._load().values())
