"""Tests for the metadata store."""

import json
import tempfile
from pathlib import Path
from unittest import mock

import pytest

from shardvault.errors import CorruptMetadataError, NotFoundError
from shardvault.keys import generate_salt
from shardvault.metadata import (
    STORE_VERSION,
    MetadataStore,
    VaultRecord,
    shard_filename,
)


def rid(n: int) -> str:
    """Deterministic, sortable record id in canonical UUID form."""
    return f"00000000-0000-4000-8000-{n:012d}"


def make_record(record_id: str, owner_id: str = "1", service_name: str = "openai",
                created_at: str = "2026-01-01T00:00:00+00:00") -> VaultRecord:
    return VaultRecord(
        record_id=record_id,
        owner_id=owner_id,
        service_name=service_name,
        salt=generate_salt(),
        shard_refs=[shard_filename(record_id, i) for i in range(3)],
        verification_tag="ab" * 32,
        created_at=created_at,
    )


def test_put_get_remove():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(Path(tmpdir) / "metadata.json")
        record = make_record(rid(1))

        store.put(record)
        loaded = store.get(rid(1))
        assert loaded == record

        assert store.remove(rid(1)) is True
        assert store.remove(rid(1)) is False
        with pytest.raises(NotFoundError):
            store.get(rid(1))


def test_persists_across_instances():
    """A second store on the same file sees the same records."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "metadata.json"
        record = make_record(rid(1))
        MetadataStore(path).put(record)

        assert MetadataStore(path).get(rid(1)) == record


def test_file_layout():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "metadata.json"
        store = MetadataStore(path)
        store.put(make_record(rid(1)))

        document = json.loads(path.read_text())
        assert document["version"] == STORE_VERSION
        assert set(document["records"]) == {rid(1)}
        entry = document["records"][rid(1)]
        assert entry["shard_refs"] == [f"{rid(1)}.{i}.shard" for i in range(3)]
        # No temp file left behind
        assert not (Path(tmpdir) / "metadata.json.tmp").exists()
        assert (path.stat().st_mode & 0o777) == 0o600


def test_list_by_owner_scope():
    """Only the requested owner's records come back, oldest first."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(Path(tmpdir) / "metadata.json")
        store.put(make_record(rid(1), owner_id="B", created_at="2026-01-01T00:00:00+00:00"))
        store.put(make_record(rid(2), owner_id="A", created_at="2026-01-03T00:00:00+00:00"))
        store.put(make_record(rid(3), owner_id="A", created_at="2026-01-02T00:00:00+00:00"))

        assert [r.record_id for r in store.list_by_owner("A")] == [rid(3), rid(2)]
        assert [r.record_id for r in store.list_by_owner("B")] == [rid(1)]
        assert store.list_by_owner("C") == []
        assert len(store.all_records()) == 3


def test_missing_file_is_empty_store():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = MetadataStore(Path(tmpdir) / "nested" / "metadata.json")
        assert store.all_records() == []
        with pytest.raises(NotFoundError):
            store.get(rid(1))


def test_unparseable_file_reinitialised():
    """Garbage is moved aside and the store starts over empty."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "metadata.json"
        path.write_text("{not json")
        store = MetadataStore(path)

        assert store.all_records() == []
        backups = list(Path(tmpdir).glob("metadata.json.corrupt-*"))
        assert len(backups) == 1
        assert backups[0].read_text() == "{not json"

        # The store is usable again
        store.put(make_record(rid(1)))
        assert store.get(rid(1)).record_id == rid(1)


def test_unknown_version_reinitialised():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "metadata.json"
        path.write_text(json.dumps({"version": 99, "records": {}}))

        assert MetadataStore(path).all_records() == []
        assert list(Path(tmpdir).glob("metadata.json.corrupt-*"))


def test_store_replaced_while_loading_is_kept():
    """A commit landing between a corrupt read and the move aside survives."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "metadata.json"
        path.write_text("{not json")

        record = make_record(rid(1))
        committed = json.dumps({
            "version": STORE_VERSION,
            "records": {record.record_id: record.to_dict()},
        })

        real_read_bytes = Path.read_bytes
        reads = []

        def read_then_commit(self):
            data = real_read_bytes(self)
            if not reads:
                # Another writer commits right after the first read
                path.write_text(committed)
            reads.append(self)
            return data

        with mock.patch.object(Path, "read_bytes", read_then_commit):
            records = MetadataStore(path).all_records()

        assert records == [record]
        assert path.exists()
        assert not list(Path(tmpdir).glob("metadata.json.corrupt-*"))
        assert MetadataStore(path).get(rid(1)) == record


def test_invalid_record_skipped():
    """One bad entry is dropped; the others still load."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "metadata.json"
        store = MetadataStore(path)
        store.put(make_record(rid(1)))
        store.put(make_record(rid(2)))
        store.put(make_record(rid(3)))

        document = json.loads(path.read_text())
        document["records"][rid(2)]["api_key"] = "sk-should-not-be-here"
        document["records"][rid(3)]["shard_refs"][0] = "../../etc/passwd"
        path.write_text(json.dumps(document))

        assert [r.record_id for r in store.all_records()] == [rid(1)]


def test_escaping_record_id_skipped():
    """A record id that would place shards outside the shard dir never loads."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "metadata.json"
        store = MetadataStore(path)
        store.put(make_record(rid(1)))

        escaping = make_record(rid(2)).to_dict()
        escaping["record_id"] = "../escape"
        escaping["shard_refs"] = [shard_filename("../escape", i) for i in range(3)]
        document = json.loads(path.read_text())
        document["records"]["../escape"] = escaping
        path.write_text(json.dumps(document))

        assert [r.record_id for r in store.all_records()] == [rid(1)]
        with pytest.raises(NotFoundError):
            store.get("../escape")


def test_record_from_dict_rejects_bad_shapes():
    good = make_record(rid(1)).to_dict()
    VaultRecord.from_dict(good)

    def with_id(record_id):
        return {
            **good,
            "record_id": record_id,
            "shard_refs": [shard_filename(record_id, i) for i in range(3)],
        }

    bad_cases = []
    missing = dict(good)
    del missing["salt"]
    bad_cases.append(missing)
    bad_cases.append({**good, "unexpected": 1})
    bad_cases.append({**good, "owner_id": 1})
    bad_cases.append({**good, "salt": "!!!not-base64!!!"})
    bad_cases.append({**good, "salt": "AAAA"})
    bad_cases.append({**good, "verification_tag": "xyz"})
    bad_cases.append({**good, "shard_refs": []})
    bad_cases.append({**good, "shard_refs": list(reversed(good["shard_refs"]))})
    bad_cases.append({**good, "description": 42})
    bad_cases.append(with_id("../escape"))
    bad_cases.append(with_id("rec-1"))
    bad_cases.append(with_id("ABCDEF00-0000-4000-8000-000000000001"))
    bad_cases.append(with_id(rid(1).replace("-", "")))
    bad_cases.append("not a dict")

    for case in bad_cases:
        with pytest.raises(CorruptMetadataError):
            VaultRecord.from_dict(case)


def test_record_holds_no_secret_material():
    """Summaries expose only id, service, timestamp and description."""
    record = make_record(rid(1))
    summary = record.summary().to_dict()
    assert set(summary) == {"record_id", "service_name", "created_at", "description"}
