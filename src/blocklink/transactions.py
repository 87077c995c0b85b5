"""Mutation transaction protocol and the per-view document session.

A ``DocumentSession`` owns one live document and the two derived indices
built from it. Every edit goes through ``dispatch``:

  1. On construction: duplicate ids repaired, then a full index build.
  2. Per transaction:
       - an explicit ``LinkDelta`` annotation goes to the link index's
         incremental path (annotations come from link/unlink/merge and
         undo/redo, never from diffing content)
       - structural change (or any link annotation) rebuilds positions
       - the link index is rebuilt only when the set of linked blocks
         changed in a way the annotation does not explain (a linked block
         deleted, pasted, or restored); moves never touch it
  3. On close: ``verify_sync_with_document`` as a non-fatal diagnostic.

Sessions are single-threaded. Dispatching from inside a transaction
callback raises ``ReentrantTransactionError``.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from blocklink.block_index import BlockPosition, BlockPositionIndex
from blocklink.config import EngineConfig
from blocklink.document import (
    Coverage,
    DocumentSnapshot,
    LinkRecord,
    Node,
    add_requirement_link,
    create_link_record,
    is_requirement_linked,
    remove_requirement_link,
)
from blocklink.editing import (
    delete_block,
    duplicate_block,
    insert_blocks,
    merge_blocks,
    move_block,
    paste_blocks,
    reidentify,
    reidentify_duplicates,
    replace_block_text,
    split_block,
)
from blocklink.link_index import DriftReport, LinkDelta, LinkIndex, compute_link_delta
from blocklink.persistence import PersistenceError

if TYPE_CHECKING:
    from blocklink.lease import LeaseManager
    from blocklink.requirements import RequirementStore

log = logging.getLogger(__name__)

DeltaListener = Callable[[LinkDelta], None]
ResyncListener = Callable[[LinkIndex], None]
TransactionListener = Callable[["Transaction"], None]


class ReadOnlyViewError(RuntimeError):
    """Raised when a view without the write lease tries to mutate."""


class ReentrantTransactionError(RuntimeError):
    """Raised when dispatching while another transaction is being applied."""


@dataclass(frozen=True, slots=True)
class Transaction:
    before: DocumentSnapshot
    after: DocumentSnapshot
    link_change: LinkDelta | None = None
    add_to_history: bool = True
    label: str = ""

    @property
    def doc_changed(self) -> bool:
        return self.before.root is not self.after.root

    @property
    def structure_changed(self) -> bool:
        return self.doc_changed and self.before.shape != self.after.shape


class DocumentSession:
    """One open view of one document: canonical snapshot + derived indices."""

    def __init__(
        self,
        snapshot: DocumentSnapshot,
        *,
        doc_id: str = "",
        config: EngineConfig | None = None,
        lease: LeaseManager | None = None,
    ) -> None:
        self.doc_id = doc_id
        self.config = config or EngineConfig()
        self._lease = lease

        snapshot, renamed = reidentify_duplicates(snapshot)
        if renamed:
            log.warning(
                "Re-identified %d duplicated block ids on load of %s: %s",
                len(renamed), doc_id or "<unsaved>", renamed,
            )
        self.repaired_ids: list[tuple[str, str]] = renamed

        self._snapshot = snapshot
        self._positions = BlockPositionIndex()
        self._positions.rebuild(snapshot)
        self._links = LinkIndex(snapshot)

        self._undo: list[Transaction] = []
        self._redo: list[Transaction] = []
        self._applying = False
        self._closed = False

        self._delta_listeners: list[DeltaListener] = []
        self._resync_listeners: list[ResyncListener] = []
        self._transaction_listeners: list[TransactionListener] = []
        log.debug(
            "Session opened for %s: %d blocks, %d links",
            doc_id or "<unsaved>", len(self._positions), self._links.get_total_link_count(),
        )

    # ── State ────────────────────────────────────────────────────

    @property
    def snapshot(self) -> DocumentSnapshot:
        return self._snapshot

    @property
    def link_index(self) -> LinkIndex:
        return self._links

    @property
    def position_index(self) -> BlockPositionIndex:
        return self._positions

    @property
    def is_applying(self) -> bool:
        return self._applying

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def can_write(self) -> bool:
        if self._closed:
            return False
        return self._lease is None or self._lease.can_write()

    # ── Listeners ────────────────────────────────────────────────

    def add_link_listener(
        self,
        on_delta: DeltaListener,
        on_resync: ResyncListener | None = None,
    ) -> None:
        self._delta_listeners.append(on_delta)
        if on_resync is not None:
            self._resync_listeners.append(on_resync)

    def attach_requirements(self, store: RequirementStore) -> None:
        """Keep ``store``'s status/linked_block_ids mirror in step with links."""
        self.add_link_listener(store.apply_link_delta, store.resync)
        store.resync(self._links)

    def add_transaction_listener(self, listener: TransactionListener) -> None:
        self._transaction_listeners.append(listener)

    # ── Dispatch ─────────────────────────────────────────────────

    def dispatch(self, tr: Transaction) -> None:
        self._dispatch(tr)
        if tr.add_to_history and tr.doc_changed:
            self._undo.append(tr)
            limit = self.config.history_limit
            if len(self._undo) > limit:
                del self._undo[: len(self._undo) - limit]
            self._redo.clear()

    def _dispatch(self, tr: Transaction) -> None:
        if self._applying:
            raise ReentrantTransactionError(
                f"Cannot dispatch {tr.label or 'transaction'} while another is applying"
            )
        if tr.before is not self._snapshot:
            raise ValueError("Transaction was built against a stale snapshot")
        if not self.can_write():
            raise ReadOnlyViewError(
                f"View of {self.doc_id or '<unsaved>'} does not hold the write lease"
            )
        self._applying = True
        try:
            self._apply(tr)
        finally:
            self._applying = False
        for listener in self._transaction_listeners:
            listener(tr)

    def _apply(self, tr: Transaction) -> None:
        if not tr.doc_changed:
            return
        self._snapshot = tr.after
        delta = tr.link_change
        if delta is not None and not delta.is_empty:
            self._links.apply_incremental_update(delta)
            for on_delta in self._delta_listeners:
                on_delta(delta)

        if not (tr.structure_changed or delta is not None):
            return
        linked_before = self._positions.linked_block_ids()
        self._positions.rebuild(tr.after)
        unexplained = linked_before ^ self._positions.linked_block_ids()
        if delta is not None:
            unexplained -= {delta.block_id}
        if unexplained:
            log.debug(
                "Linked block set changed outside annotations (%d blocks); rebuilding links",
                len(unexplained),
            )
            self._rebuild_links()

    def _rebuild_links(self) -> None:
        self._links.rebuild_from_document(self._snapshot)
        for on_resync in self._resync_listeners:
            on_resync(self._links)

    # ── Undo / Redo ──────────────────────────────────────────────

    def undo(self) -> bool:
        if not self._undo:
            return False
        tr = self._undo[-1]
        self._dispatch(self._replay(tr, target=tr.before, label=f"undo {tr.label}"))
        self._undo.pop()
        self._redo.append(tr)
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        tr = self._redo[-1]
        self._dispatch(self._replay(tr, target=tr.after, label=f"redo {tr.label}"))
        self._redo.pop()
        self._undo.append(tr)
        return True

    def _replay(self, tr: Transaction, *, target: DocumentSnapshot, label: str) -> Transaction:
        delta = None
        if tr.link_change is not None:
            block_id = tr.link_change.block_id
            delta = compute_link_delta(
                block_id,
                _links_of(self._snapshot, block_id),
                _links_of(target, block_id),
            )
        return Transaction(self._snapshot, target, delta, add_to_history=False, label=label)

    # ── Requirement linking ──────────────────────────────────────

    def link_requirement_to_block(
        self,
        block_id: str,
        req_id: str,
        coverage: Coverage | str = Coverage.FULL,
        *,
        confidence: float = 1.0,
    ) -> bool:
        """Link ``req_id`` to a block. False when not possible or already linked."""
        located = self._writable_block(block_id)
        if located is None:
            return False
        pos, node = located
        if is_requirement_linked(node.linked_requirements, req_id):
            return False
        record = create_link_record(req_id, coverage, confidence=confidence)
        after = self._snapshot.set_node_attrs(
            pos, linkedRequirements=add_requirement_link(node.linked_requirements, record),
        )
        self.dispatch(Transaction(
            self._snapshot, after, LinkDelta(block_id, (record,), ()),
            label=f"link {req_id} -> {block_id}",
        ))
        return True

    def unlink_requirement_from_block(self, block_id: str, req_id: str) -> bool:
        located = self._writable_block(block_id)
        if located is None:
            return False
        pos, node = located
        if not is_requirement_linked(node.linked_requirements, req_id):
            return False
        after = self._snapshot.set_node_attrs(
            pos, linkedRequirements=remove_requirement_link(node.linked_requirements, req_id),
        )
        self.dispatch(Transaction(
            self._snapshot, after, LinkDelta(block_id, (), (req_id,)),
            label=f"unlink {req_id} -x {block_id}",
        ))
        return True

    def set_link_coverage(self, block_id: str, req_id: str, coverage: Coverage | str) -> bool:
        """Change the coverage of an existing link in place (keeps list order)."""
        located = self._writable_block(block_id)
        if located is None:
            return False
        pos, node = located
        coverage = Coverage(coverage)
        current = next((lr for lr in node.linked_requirements if lr.req_id == req_id), None)
        if current is None or current.coverage == coverage:
            return False
        record = create_link_record(req_id, coverage, confidence=current.confidence)
        links = tuple(record if lr.req_id == req_id else lr for lr in node.linked_requirements)
        after = self._snapshot.set_node_attrs(pos, linkedRequirements=links)
        self.dispatch(Transaction(
            self._snapshot, after, LinkDelta(block_id, (record,), (req_id,)),
            label=f"coverage {req_id} {coverage}",
        ))
        return True

    def _writable_block(self, block_id: str) -> tuple[int, Node] | None:
        if not self.can_write():
            log.warning("Ignoring link change on read-only view of %s", self.doc_id or "<unsaved>")
            return None
        located = self._locate(block_id)
        if located is None:
            log.warning("Block not found: %s", block_id)
        return located

    def _locate(self, block_id: str) -> tuple[int, Node] | None:
        bp = self._positions.get(block_id)
        if bp is not None:
            node = self._snapshot.node_at(bp.pos)
            if node is not None and node.block_id == block_id:
                return bp.pos, node
            log.warning("Position index stale for block %s; falling back to traversal", block_id)
        found = self._snapshot.find_block(block_id)
        if found is None:
            return None
        pos = found[1]
        node = self._snapshot.node_at(pos)
        return (pos, node) if node is not None else None

    # ── Structural edits ─────────────────────────────────────────

    def insert_block(self, index: int, node: Node) -> str:
        if not node.is_block:
            raise ValueError(f"insert_block expects a docBlock node, got {node.type!r}")
        if _collides(self._snapshot, node):
            node = reidentify(node)
        after = insert_blocks(self._snapshot, index, [node])
        self.dispatch(Transaction(self._snapshot, after, label="insert block"))
        return str(node.block_id)

    def delete_block(self, block_id: str) -> None:
        after = delete_block(self._snapshot, block_id)
        self.dispatch(Transaction(self._snapshot, after, label=f"delete {block_id}"))

    def move_block(self, block_id: str, to_index: int) -> None:
        after = move_block(self._snapshot, block_id, to_index)
        self.dispatch(Transaction(self._snapshot, after, label=f"move {block_id}"))

    def replace_text(self, block_id: str, text: str) -> None:
        after = replace_block_text(self._snapshot, block_id, text)
        self.dispatch(Transaction(self._snapshot, after, label=f"edit {block_id}"))

    def split_block(self, block_id: str, offset: int) -> str:
        after, tail_id = split_block(self._snapshot, block_id, offset)
        self.dispatch(Transaction(self._snapshot, after, label=f"split {block_id}"))
        return tail_id

    def merge_blocks(self, first_id: str, second_id: str) -> None:
        after, gained = merge_blocks(self._snapshot, first_id, second_id)
        delta = LinkDelta(first_id, gained, ()) if gained else None
        self.dispatch(Transaction(
            self._snapshot, after, delta, label=f"merge {second_id} into {first_id}",
        ))

    def duplicate_block(self, block_id: str) -> str:
        after, copy_id = duplicate_block(self._snapshot, block_id)
        self.dispatch(Transaction(self._snapshot, after, label=f"duplicate {block_id}"))
        return copy_id

    def paste_blocks(self, index: int, nodes: Iterable[Node]) -> list[tuple[str, str]]:
        after, renamed = paste_blocks(self._snapshot, index, nodes)
        self.dispatch(Transaction(self._snapshot, after, label="paste"))
        return renamed

    # ── Queries (O(1)/O(k), no traversal) ────────────────────────

    def locate_block(self, block_id: str) -> BlockPosition | None:
        return self._positions.get(block_id)

    def block_ids_in_order(self) -> list[str]:
        return self._positions.all_ids_ordered_by_position()

    def get_blocks_for_requirement(self, req_id: str) -> list[str]:
        return self._links.get_blocks_for_requirement(req_id)

    def get_requirements_for_block(self, block_id: str) -> list[LinkRecord]:
        return self._links.get_requirements_for_block(block_id)

    def is_requirement_linked(self, req_id: str) -> bool:
        return self._links.is_requirement_linked(req_id)

    # ── Diagnostics / recovery ───────────────────────────────────

    def verify(self) -> bool:
        return self._links.verify_sync_with_document(self._snapshot)

    def repair(self) -> DriftReport:
        """Rebuild both indices from the snapshot; returns the drift found first."""
        report = self._links.diff_against_document(self._snapshot)
        if not report.in_sync:
            log.warning("Repairing link index drift: %s", report.to_dict())
        self._positions.rebuild(self._snapshot)
        self._rebuild_links()
        return report

    def close(self) -> bool:
        """Tear down the view. Returns the drift-check result (True if skipped)."""
        if self._closed:
            return True
        in_sync = True
        if self.config.verify_on_close:
            in_sync = self.verify()
            if not in_sync:
                log.error("INDEX DRIFT DETECTED on close of %s", self.doc_id or "<unsaved>")
        self._closed = True
        if self._lease is not None:
            try:
                self._lease.release()
            except PersistenceError:
                log.exception("Failed to release lease for %s", self.doc_id)
        return in_sync


def _links_of(snapshot: DocumentSnapshot, block_id: str) -> tuple[LinkRecord, ...]:
    found = snapshot.find_block(block_id)
    return found[0].linked_requirements if found else ()


def _collides(snapshot: DocumentSnapshot, node: Node) -> bool:
    return node.block_id is None or node.block_id in snapshot.block_ids()
