#!/usr/bin/env python3
"""Link doctor: audit persisted block metadata against canonical documents.

For each stored document the doctor loads the snapshot, re-identifies
duplicated block ids, rebuilds a link index from the tree and compares the
``block_meta`` rows (membership and per-block req_id lists) against it.
The tree is canonical; metadata rows are what gets reported as drifted.

With ``--repair`` a fresh snapshot is committed for every drifted document,
which rewrites metadata and garbage-collects rows of removed blocks. The
doctor takes the write lease under its own owner id for the commit; a
document whose lease is held by a live view is left alone and reported.

Exit codes: 0 clean (or repaired), 1 database missing, 2 drift remains.

Usage:
    python3 scripts/link_doctor.py --db blocklink.duckdb
    python3 scripts/link_doctor.py --db blocklink.duckdb --doc-id doc-1 --json
    python3 scripts/link_doctor.py --db blocklink.duckdb --repair
"""
from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson

from blocklink.config import EngineConfig
from blocklink.document import DocumentSnapshot, now_ms
from blocklink.editing import reidentify_duplicates
from blocklink.link_index import LinkIndex
from blocklink.persistence import DocumentRecord, DocumentStore, prepare_snapshot

log = logging.getLogger("link_doctor")

DOCTOR_OWNER_ID = "link-doctor"


@dataclass(slots=True)
class DocumentAudit:
    doc_id: str
    blocks: int = 0
    links: int = 0
    repaired_ids: list[tuple[str, str]] = field(default_factory=list)
    missing_meta: list[str] = field(default_factory=list)
    stale_meta: list[str] = field(default_factory=list)
    mismatched: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    repaired: bool = False
    lease_holder: str | None = None

    @property
    def clean(self) -> bool:
        return not (
            self.repaired_ids or self.missing_meta or self.stale_meta or self.mismatched
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "clean": self.clean,
            "repaired": self.repaired,
            "blocks": self.blocks,
            "links": self.links,
            "repaired_ids": [list(pair) for pair in self.repaired_ids],
            "missing_meta": self.missing_meta,
            "stale_meta": self.stale_meta,
            "mismatched": self.mismatched,
            "lease_holder": self.lease_holder,
        }


def audit_document(
    store: DocumentStore,
    record: DocumentRecord,
) -> tuple[DocumentAudit, DocumentSnapshot]:
    """Compare one document's metadata rows against its tree."""
    snapshot = DocumentSnapshot.from_json_bytes(record.content)
    snapshot, renamed = reidentify_duplicates(snapshot)
    index = LinkIndex(snapshot)

    audit = DocumentAudit(doc_id=record.id, repaired_ids=renamed)
    tree_ids = snapshot.block_ids()
    audit.blocks = len(tree_ids)
    audit.links = index.get_total_link_count()

    meta = {rec.block_id: rec for rec in store.get_block_meta(record.id)}
    for block_id in tree_ids:
        rec = meta.get(block_id)
        if rec is None:
            audit.missing_meta.append(block_id)
            continue
        expected = [lr.req_id for lr in index.get_requirements_for_block(block_id)]
        stored = list(rec.linked_requirements)
        if sorted(stored) != sorted(expected):
            audit.mismatched[block_id] = {"meta": stored, "document": expected}
    present = set(tree_ids)
    audit.stale_meta = sorted(bid for bid in meta if bid not in present)
    return audit, snapshot


def repair_document(
    store: DocumentStore,
    record: DocumentRecord,
    snapshot: DocumentSnapshot,
    *,
    ttl_ms: int | None = None,
) -> str | None:
    """Re-commit ``snapshot`` while holding the write lease.

    Returns None on success, or the owner id of the live view whose lease
    blocked the repair.
    """
    ttl = EngineConfig().lease_ttl_ms if ttl_ms is None else ttl_ms
    lease = store.try_acquire_lease(record.id, DOCTOR_OWNER_ID, now=now_ms(), ttl_ms=ttl)
    if lease.owner_id != DOCTOR_OWNER_ID:
        log.warning("Skipping repair of %s: write lease held by %s", record.id, lease.owner_id)
        return lease.owner_id
    try:
        prepared = prepare_snapshot(
            snapshot,
            doc_id=record.id,
            title=record.title,
            created_at=record.created_at,
            last_block_id=record.last_block_id,
        )
        result = store.commit_snapshot(prepared)
    finally:
        store.release_lease(record.id, DOCTOR_OWNER_ID)
    log.info(
        "Repaired %s: %d metadata rows written, %d collected",
        record.id, result.upserted, len(result.collected),
    )
    return None


def _print_text(audits: list[DocumentAudit]) -> None:
    for audit in audits:
        status = "clean" if audit.clean else ("repaired" if audit.repaired else "DRIFT")
        print(f"{audit.doc_id}: {status} ({audit.blocks} blocks, {audit.links} links)")
        if audit.lease_holder:
            print(f"  not repaired: write lease held by {audit.lease_holder}")
        for old_id, new_id in audit.repaired_ids:
            print(f"  duplicate id {old_id} -> {new_id}")
        for block_id in audit.missing_meta:
            print(f"  missing metadata: {block_id}")
        for block_id in audit.stale_meta:
            print(f"  stale metadata: {block_id}")
        for block_id, diff in audit.mismatched.items():
            print(f"  links differ on {block_id}: meta={diff['meta']} document={diff['document']}")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Audit block metadata against canonical document link state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", required=True, help="Path to the document DuckDB file")
    parser.add_argument("--doc-id", default=None, help="Audit only this document")
    parser.add_argument(
        "--repair", action="store_true",
        help="Re-commit drifted documents (rewrites metadata, collects stale rows)",
    )
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    db_path = Path(args.db)
    if not db_path.exists():
        log.error("Document database not found: %s", db_path)
        return 1

    store = DocumentStore(db_path)
    try:
        if args.doc_id:
            record = store.get_document(args.doc_id)
            if record is None:
                log.error("Document not found: %s", args.doc_id)
                return 1
            records = [record]
        else:
            records = store.list_documents()

        audits: list[DocumentAudit] = []
        for record in records:
            audit, snapshot = audit_document(store, record)
            if not audit.clean and args.repair:
                audit.lease_holder = repair_document(store, record, snapshot)
                audit.repaired = audit.lease_holder is None
            audits.append(audit)
    finally:
        store.close()

    if args.json:
        print(orjson.dumps(
            {"documents": [a.to_dict() for a in audits]}, option=orjson.OPT_INDENT_2,
        ).decode("utf-8"))
    else:
        _print_text(audits)

    drifted = [a.doc_id for a in audits if not a.clean and not a.repaired]
    if drifted:
        log.warning("%d document(s) with unrepaired drift", len(drifted))
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
