"""Block position index: block id -> position in one document snapshot.

Pure derived state. One entry per block wrapper (the traversal does not
descend into a block's children). Positions are only valid for the snapshot
the index was built from; any structural change requires ``rebuild``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from blocklink.document import BlockType, DocumentSnapshot, Node, parse_block_type

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BlockPosition:
    pos: int
    size: int
    type: BlockType
    has_links: bool


class BlockPositionIndex:
    """Maps block id to ``BlockPosition`` for O(1) navigation lookups."""

    def __init__(self) -> None:
        self._blocks: dict[str, BlockPosition] = {}
        self._snapshot: DocumentSnapshot | None = None
        self.version = 0

    def rebuild(self, snapshot: DocumentSnapshot) -> dict[str, BlockPosition]:
        blocks: dict[str, BlockPosition] = {}

        def visit(node: Node, pos: int) -> bool:
            if not node.is_block:
                return True
            block_id = node.block_id
            if block_id:
                if block_id in blocks:
                    log.warning("Duplicate block id in document: %s", block_id)
                else:
                    blocks[block_id] = BlockPosition(
                        pos=pos,
                        size=node.size,
                        type=parse_block_type(node.attrs.get("blockType")),
                        has_links=bool(node.linked_requirements),
                    )
            return False

        snapshot.descendants(visit)
        self._blocks = blocks
        self._snapshot = snapshot
        self.version += 1
        return dict(blocks)

    def get(self, block_id: str) -> BlockPosition | None:
        return self._blocks.get(block_id)

    def all_ids_ordered_by_position(self) -> list[str]:
        return [
            block_id
            for block_id, _ in sorted(self._blocks.items(), key=lambda kv: kv[1].pos)
        ]

    def linked_block_ids(self) -> frozenset[str]:
        return frozenset(bid for bid, bp in self._blocks.items() if bp.has_links)

    def is_built_for(self, snapshot: DocumentSnapshot) -> bool:
        return self._snapshot is snapshot

    def __len__(self) -> int:
        return len(self._blocks)

    def __contains__(self, block_id: object) -> bool:
        return block_id in self._blocks
