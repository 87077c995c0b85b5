"""Tests for blocklink.persistence: DuckDB snapshot commits, GC, leases."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import duckdb
import pytest

from blocklink.document import DocumentSnapshot, LinkRecord
from blocklink.editing import delete_block, make_block
from blocklink.persistence import (
    SCHEMA_VERSION,
    BlockMetaRecord,
    DocumentRecord,
    DocumentStore,
    PersistenceError,
    PreparedSnapshot,
    meta_key,
    prepare_snapshot,
)


# ───────────────────── Fixtures ──────────────────────────────────────


@pytest.fixture()
def store(tmp_path: Path) -> DocumentStore:
    """Create a fresh DocumentStore in a temp directory."""
    s = DocumentStore(tmp_path / "docs.duckdb", create_if_missing=True)
    yield s  # type: ignore[misc]
    s.close()


def _snap() -> DocumentSnapshot:
    return DocumentSnapshot.from_blocks([
        make_block("alpha", block_id="b1", links=[LinkRecord("REQ-1")]),
        make_block("beta", block_id="b2", links=[LinkRecord("REQ-2"), LinkRecord("REQ-3")]),
        make_block("gamma", block_id="b3"),
    ])


class _FailingConnection:
    """Delegates to a real connection but fails every DELETE statement."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def execute(self, sql: str, params: Any = None) -> Any:
        if sql.lstrip().upper().startswith("DELETE"):
            raise duckdb.Error("simulated failure during delete")
        if params is None:
            return self._conn.execute(sql)
        return self._conn.execute(sql, params)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


# ───────────────────── Schema ────────────────────────────────────────


class TestSchema:
    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            DocumentStore(tmp_path / "absent.duckdb")

    def test_tables_and_version(self, store: DocumentStore) -> None:
        tables = {
            row[0] for row in store._conn.execute(
                "SELECT table_name FROM information_schema.tables"
            ).fetchall()
        }
        assert {"documents", "block_meta", "locks", "_schema_version"} <= tables
        version = store._conn.execute(
            "SELECT version FROM _schema_version WHERE table_name = 'documents'"
        ).fetchone()
        assert version == (SCHEMA_VERSION,)

    def test_reopen_existing(self, tmp_path: Path) -> None:
        path = tmp_path / "docs.duckdb"
        DocumentStore(path, create_if_missing=True).close()
        s = DocumentStore(path)
        assert s.list_documents() == []
        s.close()


# ───────────────────── Prepare ───────────────────────────────────────


class TestPrepareSnapshot:
    def test_extracts_metadata(self) -> None:
        prepared = prepare_snapshot(_snap(), doc_id="doc-1", title="T", now=1000)
        assert prepared.present_block_ids == frozenset({"b1", "b2", "b3"})
        by_block = {rec.block_id: rec for rec in prepared.block_meta}
        assert by_block["b2"].id == "doc-1:b2"
        assert by_block["b2"].linked_requirements == ("REQ-2", "REQ-3")
        assert by_block["b3"].linked_requirements == ()
        assert by_block["b1"].provenance == {"type": "manual"}
        assert prepared.document.created_at == prepared.document.updated_at == 1000

    def test_keeps_given_created_at(self) -> None:
        prepared = prepare_snapshot(_snap(), doc_id="doc-1", now=2000, created_at=5)
        assert prepared.document.created_at == 5
        assert prepared.document.updated_at == 2000

    def test_validation_rejects_mismatched_ids(self) -> None:
        doc = DocumentRecord("doc-1", "", "{}", 0, 0)
        rec = BlockMetaRecord(meta_key("doc-1", "b1"), "doc-1", "b1")
        with pytest.raises(ValueError, match="disagree"):
            PreparedSnapshot(doc, (rec,), frozenset({"b1", "b2"}))
        with pytest.raises(ValueError, match="Duplicate"):
            PreparedSnapshot(doc, (rec, rec), frozenset({"b1"}))
        foreign = BlockMetaRecord(meta_key("doc-2", "b1"), "doc-2", "b1")
        with pytest.raises(ValueError, match="belongs to"):
            PreparedSnapshot(doc, (foreign,), frozenset({"b1"}))
        bad_key = BlockMetaRecord("b1", "doc-1", "b1")
        with pytest.raises(ValueError, match="key mismatch"):
            PreparedSnapshot(doc, (bad_key,), frozenset({"b1"}))


# ───────────────────── Commit / GC ───────────────────────────────────


class TestCommitSnapshot:
    def test_commit_and_load(self, store: DocumentStore) -> None:
        snap = _snap()
        result = store.commit_snapshot(prepare_snapshot(snap, doc_id="doc-1", title="Design notes"))
        assert result.upserted == 3
        assert result.collected == []
        loaded = store.load_snapshot("doc-1")
        assert loaded is not None
        assert loaded.block_ids() == ["b1", "b2", "b3"]
        assert loaded.blocks[1].linked_requirements == snap.blocks[1].linked_requirements
        record = store.get_document("doc-1")
        assert record is not None and record.title == "Design notes"

    def test_gc_removes_deleted_blocks(self, store: DocumentStore) -> None:
        snap = _snap()
        store.commit_snapshot(prepare_snapshot(snap, doc_id="doc-1"))
        after = delete_block(snap, "b1")
        result = store.commit_snapshot(prepare_snapshot(after, doc_id="doc-1"))
        assert result.collected == ["b1"]
        meta_ids = [rec.block_id for rec in store.get_block_meta("doc-1")]
        assert meta_ids == ["b2", "b3"]

    def test_gc_is_scoped_to_document(self, store: DocumentStore) -> None:
        store.commit_snapshot(prepare_snapshot(_snap(), doc_id="doc-1"))
        store.commit_snapshot(prepare_snapshot(_snap(), doc_id="doc-2"))
        store.commit_snapshot(prepare_snapshot(DocumentSnapshot.empty(), doc_id="doc-1"))
        assert store.get_block_meta("doc-1") == []
        assert len(store.get_block_meta("doc-2")) == 3

    def test_every_present_block_has_meta(self, store: DocumentStore) -> None:
        snap = _snap()
        prepared = prepare_snapshot(snap, doc_id="doc-1")
        store.commit_snapshot(prepared)
        stored = {rec.block_id for rec in store.get_block_meta("doc-1")}
        assert stored == prepared.present_block_ids

    def test_upsert_updates_links_and_keeps_created_at(self, store: DocumentStore) -> None:
        snap = _snap()
        store.commit_snapshot(prepare_snapshot(snap, doc_id="doc-1", now=100))
        found = snap.find_block("b3")
        assert found is not None
        relinked = snap.set_node_attrs(found[1], linkedRequirements=(LinkRecord("REQ-9"),))
        store.commit_snapshot(prepare_snapshot(relinked, doc_id="doc-1", now=200))
        meta = {rec.block_id: rec for rec in store.get_block_meta("doc-1")}
        assert meta["b3"].linked_requirements == ("REQ-9",)
        record = store.get_document("doc-1")
        assert record is not None
        assert (record.created_at, record.updated_at) == (100, 200)

    def test_failed_commit_leaves_previous_snapshot(self, store: DocumentStore) -> None:
        snap = _snap()
        store.commit_snapshot(prepare_snapshot(snap, doc_id="doc-1", title="v1"))
        after = delete_block(snap, "b2")

        real = store._conn
        store._conn = _FailingConnection(real)
        try:
            with pytest.raises(PersistenceError):
                store.commit_snapshot(prepare_snapshot(after, doc_id="doc-1", title="v2"))
        finally:
            store._conn = real

        record = store.get_document("doc-1")
        assert record is not None and record.title == "v1"
        loaded = store.load_snapshot("doc-1")
        assert loaded is not None and loaded.block_ids() == ["b1", "b2", "b3"]
        assert {rec.block_id for rec in store.get_block_meta("doc-1")} == {"b1", "b2", "b3"}

    def test_list_and_delete_documents(self, store: DocumentStore) -> None:
        store.commit_snapshot(prepare_snapshot(_snap(), doc_id="doc-1", now=1))
        store.commit_snapshot(prepare_snapshot(_snap(), doc_id="doc-2", now=2))
        assert [d.id for d in store.list_documents()] == ["doc-2", "doc-1"]
        store.delete_document("doc-1")
        assert store.get_document("doc-1") is None
        assert store.load_snapshot("doc-1") is None
        assert store.get_block_meta("doc-1") == []
        assert [d.id for d in store.list_documents()] == ["doc-2"]


# ───────────────────── Leases ────────────────────────────────────────


class TestLeases:
    def test_acquire_free_lease(self, store: DocumentStore) -> None:
        rec = store.try_acquire_lease("doc-1", "view-a", now=1000, ttl_ms=500)
        assert (rec.owner_id, rec.expires_at) == ("view-a", 1500)

    def test_contention_returns_holder(self, store: DocumentStore) -> None:
        store.try_acquire_lease("doc-1", "view-a", now=1000, ttl_ms=500)
        rec = store.try_acquire_lease("doc-1", "view-b", now=1200, ttl_ms=500)
        assert rec.owner_id == "view-a"

    def test_expired_lease_can_be_taken(self, store: DocumentStore) -> None:
        store.try_acquire_lease("doc-1", "view-a", now=1000, ttl_ms=500)
        rec = store.try_acquire_lease("doc-1", "view-b", now=1500, ttl_ms=500)
        assert (rec.owner_id, rec.expires_at) == ("view-b", 2000)

    def test_owner_renews(self, store: DocumentStore) -> None:
        store.try_acquire_lease("doc-1", "view-a", now=1000, ttl_ms=500)
        rec = store.try_acquire_lease("doc-1", "view-a", now=1400, ttl_ms=500)
        assert rec.expires_at == 1900

    def test_release_only_by_owner(self, store: DocumentStore) -> None:
        store.try_acquire_lease("doc-1", "view-a", now=1000, ttl_ms=500)
        assert not store.release_lease("doc-1", "view-b")
        assert store.get_lease("doc-1") is not None
        assert store.release_lease("doc-1", "view-a")
        assert store.get_lease("doc-1") is None
