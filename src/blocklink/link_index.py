"""Link index: derived, bidirectional requirement <-> block lookup.

READ-ONLY cache over canonical document state. ``docBlock`` attrs
(``linkedRequirements``) are the source of truth; this index can be rebuilt
from any snapshot at any time with no information loss.

Key invariants:
  - ``block_id in req_to_blocks[req_id]`` exactly when ``req_id`` is one of
    the req_ids in ``block_to_reqs[block_id]``
  - no empty entries in either map
  - at most one record per (block, req_id)
  - never written without a corresponding document transaction

``apply_incremental_update`` is an optimisation over full traversal. If it
ever drifts, ``rebuild_from_document`` corrects it.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from blocklink.document import DocumentSnapshot, LinkRecord, Node

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Deltas
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class LinkDelta:
    """Explicit link-change annotation attached to a transaction.

    ``added_links`` are the exact records written to the block's canonical
    list; ``removed_links`` are req_ids.
    """
    block_id: str
    added_links: tuple[LinkRecord, ...] = ()
    removed_links: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.added_links and not self.removed_links


def compute_link_delta(
    block_id: str,
    before: Iterable[LinkRecord],
    after: Iterable[LinkRecord],
) -> LinkDelta:
    """Delta that turns one canonical link list into another.

    A record whose req_id survives but whose fields changed is expressed as
    remove + add.
    """
    before_by_req = {lr.req_id: lr for lr in before}
    after_list = list(after)
    after_by_req = {lr.req_id: lr for lr in after_list}
    removed = [
        req_id for req_id, lr in before_by_req.items()
        if after_by_req.get(req_id) != lr
    ]
    added = [lr for lr in after_list if before_by_req.get(lr.req_id) != lr]
    return LinkDelta(block_id, tuple(added), tuple(removed))


# ---------------------------------------------------------------------------
# Drift report
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class DriftReport:
    missing_blocks: list[str] = field(default_factory=list)
    unexpected_blocks: list[str] = field(default_factory=list)
    mismatched: dict[str, tuple[list[str], list[str]]] = field(default_factory=dict)

    @property
    def in_sync(self) -> bool:
        return not (self.missing_blocks or self.unexpected_blocks or self.mismatched)

    def to_dict(self) -> dict[str, Any]:
        return {
            "in_sync": self.in_sync,
            "missing_blocks": list(self.missing_blocks),
            "unexpected_blocks": list(self.unexpected_blocks),
            "mismatched": {
                bid: {"index": idx, "document": doc}
                for bid, (idx, doc) in self.mismatched.items()
            },
        }


# ---------------------------------------------------------------------------
# LinkIndex
# ---------------------------------------------------------------------------

class LinkIndex:
    """Bidirectional requirement/block index built from a ``DocumentSnapshot``.

    One instance belongs to one document session. It is always constructed
    from a snapshot so there is no "unbuilt" state to reason about.
    """

    def __init__(self, snapshot: DocumentSnapshot) -> None:
        # req_id -> ordered set of block ids (dict keys)
        self._req_to_blocks: dict[str, dict[str, None]] = {}
        # block_id -> records in canonical order
        self._block_to_reqs: dict[str, list[LinkRecord]] = {}
        self.version = 0
        self.rebuild_from_document(snapshot)

    # ── Build paths ──────────────────────────────────────────────

    def rebuild_from_document(self, snapshot: DocumentSnapshot) -> None:
        """Replace all state with a fresh traversal of ``snapshot``."""
        req_to_blocks: dict[str, dict[str, None]] = {}
        block_to_reqs: dict[str, list[LinkRecord]] = {}

        def visit(node: Node, pos: int) -> bool:
            if not node.is_block:
                return True
            block_id = node.block_id
            links = node.linked_requirements
            if block_id and links:
                existing = block_to_reqs.get(block_id)
                if existing is None:
                    existing = block_to_reqs[block_id] = []
                else:
                    log.warning("Duplicate block id %s while indexing links", block_id)
                for record in links:
                    if any(r.req_id == record.req_id for r in existing):
                        continue
                    existing.append(record)
                    req_to_blocks.setdefault(record.req_id, {})[block_id] = None
            return False

        snapshot.descendants(visit)
        self._req_to_blocks = req_to_blocks
        self._block_to_reqs = block_to_reqs
        self.version += 1
        log.debug(
            "Link index rebuilt: %d blocks, %d links",
            len(block_to_reqs), self.get_total_link_count(),
        )

    def apply_incremental_update(self, delta: LinkDelta) -> None:
        """Apply one block's link delta without traversing the document."""
        for req_id in delta.removed_links:
            self._remove_link(delta.block_id, req_id)
        for record in delta.added_links:
            self._add_link(delta.block_id, record)
        self.version += 1

    def verify_sync_with_document(self, snapshot: DocumentSnapshot) -> bool:
        """Compare against a throwaway rebuild (block and per-block link counts).

        Diagnostic only; it never corrects anything.
        """
        fresh = LinkIndex(snapshot)
        if len(self._block_to_reqs) != len(fresh._block_to_reqs):
            log.warning(
                "Link index block count mismatch: index=%d document=%d",
                len(self._block_to_reqs), len(fresh._block_to_reqs),
            )
            return False
        for block_id, records in self._block_to_reqs.items():
            fresh_records = fresh._block_to_reqs.get(block_id)
            if fresh_records is None:
                log.warning("Link index has block missing from document: %s", block_id)
                return False
            if len(records) != len(fresh_records):
                log.warning("Link count mismatch for block: %s", block_id)
                return False
        return True

    def diff_against_document(self, snapshot: DocumentSnapshot) -> DriftReport:
        """Detailed comparison against a fresh rebuild, including req_ids."""
        fresh = LinkIndex(snapshot)
        report = DriftReport()
        for block_id, fresh_records in fresh._block_to_reqs.items():
            records = self._block_to_reqs.get(block_id)
            if records is None:
                report.missing_blocks.append(block_id)
                continue
            ours = sorted(r.req_id for r in records)
            theirs = sorted(r.req_id for r in fresh_records)
            if ours != theirs:
                report.mismatched[block_id] = (ours, theirs)
        for block_id in self._block_to_reqs:
            if block_id not in fresh._block_to_reqs:
                report.unexpected_blocks.append(block_id)
        return report

    # ── Queries ──────────────────────────────────────────────────

    def get_blocks_for_requirement(self, req_id: str) -> list[str]:
        return list(self._req_to_blocks.get(req_id, ()))

    def get_requirements_for_block(self, block_id: str) -> list[LinkRecord]:
        return list(self._block_to_reqs.get(block_id, ()))

    def is_requirement_linked(self, req_id: str) -> bool:
        return bool(self._req_to_blocks.get(req_id))

    def has_links(self, block_id: str) -> bool:
        return bool(self._block_to_reqs.get(block_id))

    def get_link_count(self, block_id: str) -> int:
        return len(self._block_to_reqs.get(block_id, ()))

    def get_total_link_count(self) -> int:
        return sum(len(records) for records in self._block_to_reqs.values())

    def linked_requirement_ids(self) -> list[str]:
        return list(self._req_to_blocks)

    def linked_block_ids(self) -> list[str]:
        return list(self._block_to_reqs)

    def as_dict(self) -> dict[str, Any]:
        """Order-normalised copy of both maps, for comparing index states."""
        return {
            "req_to_blocks": {
                req_id: sorted(blocks)
                for req_id, blocks in sorted(self._req_to_blocks.items())
            },
            "block_to_reqs": {
                block_id: sorted(
                    (r.req_id, str(r.coverage), r.confidence, r.timestamp)
                    for r in records
                )
                for block_id, records in sorted(self._block_to_reqs.items())
            },
        }

    # ── Internals ────────────────────────────────────────────────

    def _add_link(self, block_id: str, record: LinkRecord) -> None:
        records = self._block_to_reqs.setdefault(block_id, [])
        if not any(r.req_id == record.req_id for r in records):
            records.append(record)
        self._req_to_blocks.setdefault(record.req_id, {})[block_id] = None

    def _remove_link(self, block_id: str, req_id: str) -> None:
        records = self._block_to_reqs.get(block_id)
        if records is not None:
            kept = [r for r in records if r.req_id != req_id]
            if kept:
                self._block_to_reqs[block_id] = kept
            else:
                del self._block_to_reqs[block_id]
        blocks = self._req_to_blocks.get(req_id)
        if blocks is not None:
            blocks.pop(block_id, None)
            if not blocks:
                del self._req_to_blocks[req_id]
