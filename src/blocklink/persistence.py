"""DuckDB snapshot store for documents, per-block metadata and view leases.

Manages one DuckDB file with three logical tables:

* ``documents``: one row per document (serialized tree JSON)
* ``block_meta``: one row per (document, block), keyed ``doc_id:block_id``
* ``locks``: single-writer lease per document

Write discipline: everything that needs computing (tree serialization,
metadata extraction) happens in ``prepare_snapshot`` BEFORE the write.
``commit_snapshot`` only writes already-materialized values inside one
``BEGIN TRANSACTION ... COMMIT``, so a failure leaves the previous snapshot
intact. Each commit also garbage-collects metadata of blocks that are no
longer in the document (set difference on ids, no content comparison).
"""
from __future__ import annotations

import contextlib
import importlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson

from blocklink.document import DocumentSnapshot, now_ms

# Dynamic DuckDB import for pyright compatibility
_duckdb_mod = importlib.import_module("duckdb")

log = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"


class PersistenceError(RuntimeError):
    """A store operation failed and was rolled back."""


def _json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def _json_loads(s: str | None) -> Any:
    if s is None:
        return None
    return orjson.loads(s)


def _to_dict(cols: list[str], row: tuple[Any, ...]) -> dict[str, Any]:
    """Zip column names with a row tuple into a dict (strict length check)."""
    return dict(zip(cols, row, strict=True))


def meta_key(doc_id: str, block_id: str) -> str:
    return f"{doc_id}:{block_id}"


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_DDL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS _schema_version (
    table_name VARCHAR PRIMARY KEY,
    version VARCHAR NOT NULL
);

-- ─── DOCUMENTS ───────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS documents (
    id VARCHAR PRIMARY KEY,
    title VARCHAR NOT NULL DEFAULT '',
    content VARCHAR NOT NULL,
    created_at BIGINT NOT NULL,
    updated_at BIGINT NOT NULL,
    last_block_id VARCHAR
);

-- ─── BLOCK METADATA ──────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS block_meta (
    id VARCHAR PRIMARY KEY,
    doc_id VARCHAR NOT NULL,
    block_id VARCHAR NOT NULL,
    linked_requirements VARCHAR NOT NULL DEFAULT '[]',
    provenance VARCHAR
);

-- ─── LEASES ──────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS locks (
    doc_id VARCHAR PRIMARY KEY,
    owner_id VARCHAR NOT NULL,
    expires_at BIGINT NOT NULL
);
"""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class DocumentRecord:
    id: str
    title: str
    content: str
    created_at: int
    updated_at: int
    last_block_id: str | None = None


@dataclass(frozen=True, slots=True)
class BlockMetaRecord:
    id: str
    doc_id: str
    block_id: str
    linked_requirements: tuple[str, ...] = ()
    provenance: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class LeaseRecord:
    doc_id: str
    owner_id: str
    expires_at: int


@dataclass(frozen=True, slots=True)
class PreparedSnapshot:
    """Fully materialized commit payload.

    Invariants (enforced in __post_init__):
        - every record belongs to ``document.id`` and is keyed ``doc:block``
        - one record per block id
        - record block ids == ``present_block_ids``
    """
    document: DocumentRecord
    block_meta: tuple[BlockMetaRecord, ...]
    present_block_ids: frozenset[str]

    def __post_init__(self) -> None:
        doc_id = self.document.id
        seen: set[str] = set()
        for rec in self.block_meta:
            if rec.doc_id != doc_id:
                raise ValueError(f"Block meta {rec.id} belongs to {rec.doc_id}, not {doc_id}")
            if rec.id != meta_key(doc_id, rec.block_id):
                raise ValueError(f"Block meta key mismatch: {rec.id}")
            if rec.block_id in seen:
                raise ValueError(f"Duplicate block meta for {rec.block_id}")
            seen.add(rec.block_id)
        if seen != set(self.present_block_ids):
            missing = sorted(set(self.present_block_ids) - seen)
            extra = sorted(seen - set(self.present_block_ids))
            raise ValueError(
                f"present_block_ids and block_meta disagree: missing={missing} extra={extra}"
            )


@dataclass(frozen=True, slots=True)
class CommitResult:
    doc_id: str
    upserted: int
    collected: list[str] = field(default_factory=list)


def prepare_snapshot(
    snapshot: DocumentSnapshot,
    *,
    doc_id: str,
    title: str = "",
    now: int | None = None,
    created_at: int | None = None,
    last_block_id: str | None = None,
) -> PreparedSnapshot:
    """Serialize ``snapshot`` and extract block metadata, outside any write."""
    ts = now_ms() if now is None else now
    document = DocumentRecord(
        id=doc_id,
        title=title,
        content=snapshot.to_json_bytes().decode("utf-8"),
        created_at=ts if created_at is None else created_at,
        updated_at=ts,
        last_block_id=last_block_id,
    )
    records: list[BlockMetaRecord] = []
    present: set[str] = set()
    for block, _, _ in snapshot.iter_blocks():
        if block.id in present:
            continue
        present.add(block.id)
        records.append(BlockMetaRecord(
            id=meta_key(doc_id, block.id),
            doc_id=doc_id,
            block_id=block.id,
            linked_requirements=tuple(lr.req_id for lr in block.linked_requirements),
            provenance={"type": str(block.source)},
        ))
    return PreparedSnapshot(document, tuple(records), frozenset(present))


# ---------------------------------------------------------------------------
# DocumentStore
# ---------------------------------------------------------------------------

class DocumentStore:
    """Read/write interface to the document DuckDB file."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        create_if_missing: bool = False,
    ) -> None:
        self._db_path = Path(db_path)
        if not self._db_path.exists() and not create_if_missing:
            raise FileNotFoundError(f"Document database not found: {self._db_path}")
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: Any = _duckdb_mod.connect(str(self._db_path))
        self._create_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _create_schema(self) -> None:
        """Create all tables if they don't exist."""
        for stmt in _SCHEMA_DDL.split(";"):
            stmt = stmt.strip()
            if stmt:
                self._conn.execute(stmt)
        self._conn.execute(
            "INSERT OR REPLACE INTO _schema_version (table_name, version) VALUES (?, ?)",
            ["documents", SCHEMA_VERSION],
        )

    @contextlib.contextmanager
    def _transaction(self, what: str):
        self._conn.execute("BEGIN TRANSACTION")
        try:
            yield
            self._conn.execute("COMMIT")
        except Exception as exc:
            with contextlib.suppress(Exception):
                self._conn.execute("ROLLBACK")
            log.error("%s failed, rolled back: %s", what, exc)
            raise PersistenceError(f"{what} failed: {exc}") from exc

    # ─── Snapshot commit ──────────────────────────────────────────

    def commit_snapshot(self, prepared: PreparedSnapshot) -> CommitResult:
        """Upsert document + block metadata and sweep stale metadata atomically."""
        doc = prepared.document
        meta_rows = [
            [
                rec.id,
                rec.doc_id,
                rec.block_id,
                _json_dumps(list(rec.linked_requirements)),
                _json_dumps(rec.provenance) if rec.provenance is not None else None,
            ]
            for rec in prepared.block_meta
        ]
        present = prepared.present_block_ids
        collected: list[str] = []

        with self._transaction(f"Commit of {doc.id}"):
            self._conn.execute("""
                INSERT INTO documents
                (id, title, content, created_at, updated_at, last_block_id)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    title = excluded.title,
                    content = excluded.content,
                    updated_at = excluded.updated_at,
                    last_block_id = excluded.last_block_id
            """, [
                doc.id, doc.title, doc.content,
                doc.created_at, doc.updated_at, doc.last_block_id,
            ])

            if meta_rows:
                self._conn.executemany("""
                    INSERT INTO block_meta
                    (id, doc_id, block_id, linked_requirements, provenance)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        linked_requirements = excluded.linked_requirements,
                        provenance = excluded.provenance
                """, meta_rows)

            # Garbage collection: metadata of blocks no longer present
            rows = self._conn.execute(
                "SELECT id, block_id FROM block_meta WHERE doc_id = ?", [doc.id],
            ).fetchall()
            stale = [(row[0], row[1]) for row in rows if row[1] not in present]
            if stale:
                placeholders = ", ".join("?" for _ in stale)
                self._conn.execute(
                    f"DELETE FROM block_meta WHERE id IN ({placeholders})",
                    [key for key, _ in stale],
                )
                collected = sorted(block_id for _, block_id in stale)

        if collected:
            log.debug("Collected metadata for %d removed blocks of %s", len(collected), doc.id)
        return CommitResult(doc_id=doc.id, upserted=len(meta_rows), collected=collected)

    # ─── Reads ────────────────────────────────────────────────────

    def get_document(self, doc_id: str) -> DocumentRecord | None:
        row = self._conn.execute(
            "SELECT id, title, content, created_at, updated_at, last_block_id "
            "FROM documents WHERE id = ?",
            [doc_id],
        ).fetchone()
        if row is None:
            return None
        return DocumentRecord(*row)

    def load_snapshot(self, doc_id: str) -> DocumentSnapshot | None:
        record = self.get_document(doc_id)
        if record is None:
            return None
        return DocumentSnapshot.from_json_bytes(record.content)

    def list_documents(self) -> list[DocumentRecord]:
        rows = self._conn.execute(
            "SELECT id, title, content, created_at, updated_at, last_block_id "
            "FROM documents ORDER BY updated_at DESC, id ASC"
        ).fetchall()
        return [DocumentRecord(*row) for row in rows]

    def get_block_meta(self, doc_id: str) -> list[BlockMetaRecord]:
        rows = self._conn.execute(
            "SELECT id, doc_id, block_id, linked_requirements, provenance "
            "FROM block_meta WHERE doc_id = ? ORDER BY block_id",
            [doc_id],
        ).fetchall()
        cols = [d[0] for d in self._conn.description]
        out: list[BlockMetaRecord] = []
        for row in rows:
            d = _to_dict(cols, row)
            out.append(BlockMetaRecord(
                id=d["id"],
                doc_id=d["doc_id"],
                block_id=d["block_id"],
                linked_requirements=tuple(_json_loads(d["linked_requirements"]) or ()),
                provenance=_json_loads(d["provenance"]),
            ))
        return out

    def delete_document(self, doc_id: str) -> None:
        with self._transaction(f"Delete of {doc_id}"):
            self._conn.execute("DELETE FROM block_meta WHERE doc_id = ?", [doc_id])
            self._conn.execute("DELETE FROM locks WHERE doc_id = ?", [doc_id])
            self._conn.execute("DELETE FROM documents WHERE id = ?", [doc_id])

    # ─── Leases ───────────────────────────────────────────────────

    def get_lease(self, doc_id: str) -> LeaseRecord | None:
        row = self._conn.execute(
            "SELECT doc_id, owner_id, expires_at FROM locks WHERE doc_id = ?", [doc_id],
        ).fetchone()
        return LeaseRecord(*row) if row else None

    def try_acquire_lease(
        self,
        doc_id: str,
        owner_id: str,
        *,
        now: int,
        ttl_ms: int,
    ) -> LeaseRecord:
        """Compare-and-swap on the lease row; returns whoever holds it afterwards.

        Taken when absent, expired (``expires_at <= now``) or already ours.
        """
        expires_at = now + ttl_ms
        with self._transaction(f"Lease acquire on {doc_id}"):
            current = self._conn.execute(
                "SELECT owner_id, expires_at FROM locks WHERE doc_id = ?", [doc_id],
            ).fetchone()
            if current is None:
                self._conn.execute(
                    "INSERT INTO locks (doc_id, owner_id, expires_at) VALUES (?, ?, ?)",
                    [doc_id, owner_id, expires_at],
                )
            elif current[0] == owner_id or current[1] <= now:
                self._conn.execute(
                    "UPDATE locks SET owner_id = ?, expires_at = ? "
                    "WHERE doc_id = ? AND owner_id = ? AND expires_at = ?",
                    [owner_id, expires_at, doc_id, current[0], current[1]],
                )
            row = self._conn.execute(
                "SELECT doc_id, owner_id, expires_at FROM locks WHERE doc_id = ?", [doc_id],
            ).fetchone()
        return LeaseRecord(*row)

    def release_lease(self, doc_id: str, owner_id: str) -> bool:
        with self._transaction(f"Lease release on {doc_id}"):
            row = self._conn.execute(
                "DELETE FROM locks WHERE doc_id = ? AND owner_id = ? RETURNING doc_id",
                [doc_id, owner_id],
            ).fetchone()
        return row is not None

    # ─── Lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
