"""Document tree model: the canonical home of block identity and link data.

The document is an ordered tree of ``Node`` objects shaped like the host
editor's JSON output::

    {"type": "doc", "content": [
        {"type": "docBlock",
         "attrs": {"id": "block-1a2b3c4d", "blockType": "paragraph",
                   "source": "manual", "linkedRequirements": [...]},
         "content": [{"type": "paragraph",
                      "content": [{"type": "text", "text": "..."}]}]},
        ...
    ]}

Every ``docBlock`` wrapper carries the block's stable id and its
``linkedRequirements`` list. That list is CANONICAL: the link index and the
position index are derived from it and can be thrown away at any time.

Position arithmetic follows the host editor:
  - a text node's size is the length of its text
  - a leaf node (``LEAF_TYPES``) has size 1
  - any other node has size 2 + the sizes of its children
  - document content starts at position 0; a node at ``pos`` has its
    children starting at ``pos + 1``

``DocumentSnapshot`` is immutable. Edits produce a new snapshot, which is
what lets a transaction carry a before/after pair cheaply.
"""
from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field, replace
from enum import StrEnum
from functools import cached_property
from typing import Any

import orjson

DOC_NODE = "doc"
BLOCK_NODE = "docBlock"
TEXT_NODE = "text"

LEAF_TYPES: frozenset[str] = frozenset({
    "hardBreak",
    "horizontalRule",
    "image",
    "pageBreak",
})


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BlockType(StrEnum):
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    LIST = "list"
    TABLE = "table"
    CODE = "code"


class BlockSource(StrEnum):
    """Provenance of a block. Informational only."""
    MANUAL = "manual"
    IMPORT = "import"
    PASTE = "paste"


class Coverage(StrEnum):
    FULL = "full"
    PARTIAL = "partial"


_BLOCK_TYPE_ALIASES = {
    "codeBlock": BlockType.CODE,
    "bulletList": BlockType.LIST,
    "orderedList": BlockType.LIST,
    "taskList": BlockType.LIST,
}


def parse_block_type(value: Any) -> BlockType:
    """Normalise a stored ``blockType`` value; unknown values become paragraph."""
    raw = str(value or "").strip()
    if raw in _BLOCK_TYPE_ALIASES:
        return _BLOCK_TYPE_ALIASES[raw]
    try:
        return BlockType(raw)
    except ValueError:
        return BlockType.PARAGRAPH


def parse_block_source(value: Any) -> BlockSource:
    try:
        return BlockSource(str(value or "").strip())
    except ValueError:
        return BlockSource.MANUAL


def parse_coverage(value: Any) -> Coverage:
    try:
        return Coverage(str(value or "").strip())
    except ValueError:
        return Coverage.FULL


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_block_id() -> str:
    """Generate a new block id (``block-`` + 8 hex chars)."""
    return f"block-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# LinkRecord
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class LinkRecord:
    """One requirement link stored on a block.

    Invariants (enforced in __post_init__):
        - req_id is non-empty
        - 0.0 <= confidence <= 1.0
    """
    req_id: str
    coverage: Coverage = Coverage.FULL
    confidence: float = 1.0
    timestamp: int = 0

    def __post_init__(self) -> None:
        if not self.req_id:
            raise ValueError("LinkRecord.req_id must be non-empty")
        if not isinstance(self.coverage, Coverage):
            object.__setattr__(self, "coverage", Coverage(self.coverage))
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(
                f"LinkRecord.confidence must be in [0, 1], got {self.confidence}"
            )

    def to_json(self) -> dict[str, Any]:
        return {
            "reqId": self.req_id,
            "coverage": str(self.coverage),
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> LinkRecord:
        return cls(
            req_id=str(data["reqId"]),
            coverage=parse_coverage(data.get("coverage")),
            confidence=float(data.get("confidence", 1.0)),
            timestamp=int(data.get("timestamp", 0) or 0),
        )


def create_link_record(
    req_id: str,
    coverage: Coverage | str = Coverage.FULL,
    *,
    confidence: float = 1.0,
    timestamp: int | None = None,
) -> LinkRecord:
    return LinkRecord(
        req_id=req_id,
        coverage=Coverage(coverage),
        confidence=confidence,
        timestamp=now_ms() if timestamp is None else timestamp,
    )


def is_requirement_linked(links: Iterable[LinkRecord], req_id: str) -> bool:
    return any(lr.req_id == req_id for lr in links)


def add_requirement_link(
    links: tuple[LinkRecord, ...],
    record: LinkRecord,
) -> tuple[LinkRecord, ...]:
    """Append ``record`` unless its req_id is already present (coalesce)."""
    if is_requirement_linked(links, record.req_id):
        return links
    return (*links, record)


def remove_requirement_link(
    links: tuple[LinkRecord, ...],
    req_id: str,
) -> tuple[LinkRecord, ...]:
    return tuple(lr for lr in links if lr.req_id != req_id)


def coalesce_links(links: Iterable[LinkRecord]) -> tuple[LinkRecord, ...]:
    """Drop repeated req_ids, keeping the first record for each."""
    seen: set[str] = set()
    out: list[LinkRecord] = []
    for lr in links:
        if lr.req_id in seen:
            continue
        seen.add(lr.req_id)
        out.append(lr)
    return tuple(out)


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Node:
    type: str
    attrs: dict[str, Any] = field(default_factory=dict)
    content: tuple[Node, ...] = ()
    text: str | None = None
    size: int = field(init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.text is not None:
            size = len(self.text)
        elif self.type in LEAF_TYPES:
            size = 1
        else:
            size = 2 + sum(child.size for child in self.content)
        object.__setattr__(self, "size", size)

    @property
    def is_block(self) -> bool:
        return self.type == BLOCK_NODE

    @property
    def block_id(self) -> str | None:
        if not self.is_block:
            return None
        value = self.attrs.get("id")
        return str(value) if value else None

    @property
    def linked_requirements(self) -> tuple[LinkRecord, ...]:
        return tuple(self.attrs.get("linkedRequirements", ()))

    def with_attrs(self, **attrs: Any) -> Node:
        return replace(self, attrs={**self.attrs, **attrs})

    def with_content(self, content: Iterable[Node]) -> Node:
        return replace(self, content=tuple(content))

    def text_content(self) -> str:
        if self.text is not None:
            return self.text
        return "".join(child.text_content() for child in self.content)


@dataclass(frozen=True, slots=True)
class Block:
    """Read-only view of a ``docBlock`` node's attributes."""
    id: str
    block_type: BlockType
    source: BlockSource
    linked_requirements: tuple[LinkRecord, ...]

    @classmethod
    def from_node(cls, node: Node) -> Block:
        if not node.is_block:
            raise ValueError(f"Not a block node: {node.type}")
        return cls(
            id=node.block_id or "",
            block_type=parse_block_type(node.attrs.get("blockType")),
            source=parse_block_source(node.attrs.get("source")),
            linked_requirements=node.linked_requirements,
        )

    @property
    def has_links(self) -> bool:
        return bool(self.linked_requirements)


# ---------------------------------------------------------------------------
# JSON codec
# ---------------------------------------------------------------------------

def node_from_json(data: dict[str, Any]) -> Node:
    node_type = str(data.get("type", ""))
    if not node_type:
        raise ValueError(f"Node without type: {data!r}")
    if node_type == TEXT_NODE:
        return Node(TEXT_NODE, text=str(data.get("text", "")))
    attrs = dict(data.get("attrs") or {})
    if node_type == BLOCK_NODE:
        attrs = _block_attrs_from_json(attrs)
    content = tuple(node_from_json(child) for child in data.get("content") or ())
    return Node(node_type, attrs, content)


def _block_attrs_from_json(attrs: dict[str, Any]) -> dict[str, Any]:
    raw_links = attrs.get("linkedRequirements") or []
    links = coalesce_links(
        lr if isinstance(lr, LinkRecord) else LinkRecord.from_json(lr)
        for lr in raw_links
    )
    return {
        **attrs,
        "id": str(attrs.get("id") or generate_block_id()),
        "blockType": parse_block_type(attrs.get("blockType")),
        "source": parse_block_source(attrs.get("source")),
        "linkedRequirements": links,
    }


def node_to_json(node: Node) -> dict[str, Any]:
    if node.text is not None:
        return {"type": TEXT_NODE, "text": node.text}
    out: dict[str, Any] = {"type": node.type}
    if node.attrs:
        attrs = dict(node.attrs)
        if node.is_block:
            attrs["blockType"] = str(attrs.get("blockType", BlockType.PARAGRAPH))
            attrs["source"] = str(attrs.get("source", BlockSource.MANUAL))
            attrs["linkedRequirements"] = [
                lr.to_json() for lr in node.linked_requirements
            ]
        out["attrs"] = attrs
    if node.content:
        out["content"] = [node_to_json(child) for child in node.content]
    return out


# ---------------------------------------------------------------------------
# DocumentSnapshot
# ---------------------------------------------------------------------------

Visitor = Callable[[Node, int], bool | None]


@dataclass(frozen=True)
class DocumentSnapshot:
    """Immutable document state.

    Derived indices are built *from* a snapshot and are valid only for it.
    """
    root: Node

    def __post_init__(self) -> None:
        if self.root.type != DOC_NODE:
            raise ValueError(f"Snapshot root must be '{DOC_NODE}', got {self.root.type!r}")

    @classmethod
    def empty(cls) -> DocumentSnapshot:
        return cls(Node(DOC_NODE))

    @classmethod
    def from_blocks(cls, blocks: Iterable[Node]) -> DocumentSnapshot:
        return cls(Node(DOC_NODE, content=tuple(blocks)))

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> DocumentSnapshot:
        return cls(node_from_json(data))

    @classmethod
    def from_json_bytes(cls, raw: bytes | str) -> DocumentSnapshot:
        return cls.from_json(orjson.loads(raw))

    def to_json(self) -> dict[str, Any]:
        return node_to_json(self.root)

    def to_json_bytes(self) -> bytes:
        return orjson.dumps(self.to_json())

    @property
    def content_size(self) -> int:
        return self.root.size - 2

    @property
    def blocks(self) -> tuple[Node, ...]:
        return self.root.content

    # ── Traversal ────────────────────────────────────────────────

    def descendants(self, visit: Visitor) -> None:
        """Call ``visit(node, pos)`` depth-first for every node.

        Returning ``False`` from ``visit`` skips that node's children.
        """
        _walk(self.root.content, 0, visit)

    def iter_blocks(self) -> Iterator[tuple[Block, int, int]]:
        """Yield ``(block, pos, size)`` for every block wrapper, in order."""
        found: list[tuple[Block, int, int]] = []

        def visit(node: Node, pos: int) -> bool:
            if node.is_block and node.block_id:
                found.append((Block.from_node(node), pos, node.size))
                return False
            return True

        self.descendants(visit)
        return iter(found)

    def block_ids(self) -> list[str]:
        return [block.id for block, _, _ in self.iter_blocks()]

    def find_block(self, block_id: str) -> tuple[Block, int] | None:
        for block, pos, _ in self.iter_blocks():
            if block.id == block_id:
                return block, pos
        return None

    def node_at(self, pos: int) -> Node | None:
        """Return the outermost node starting exactly at ``pos``."""
        return _node_at(self.root.content, 0, pos)

    @cached_property
    def shape(self) -> tuple[tuple[str, str, int], ...]:
        """(block id, block type, size) per block, in document order.

        Two snapshots with equal shapes have every block at the same
        position, so a position index built for one is valid for the other.
        """
        return tuple(
            (block.id, str(block.block_type), size)
            for block, _, size in self.iter_blocks()
        )

    # ── Updates (return new snapshots) ──────────────────────────

    def set_node_attrs(self, pos: int, **attrs: Any) -> DocumentSnapshot:
        """Replace attributes of the node starting at ``pos`` in one step."""
        content = _replace_at(
            self.root.content, 0, pos, lambda node: node.with_attrs(**attrs),
        )
        if content is None:
            raise ValueError(f"No node starts at position {pos}")
        return DocumentSnapshot(self.root.with_content(content))

    def with_blocks(self, blocks: Iterable[Node]) -> DocumentSnapshot:
        return DocumentSnapshot(self.root.with_content(blocks))


def _walk(content: tuple[Node, ...], start: int, visit: Visitor) -> None:
    pos = start
    for child in content:
        descend = visit(child, pos)
        if descend is not False and child.content:
            _walk(child.content, pos + 1, visit)
        pos += child.size


def _node_at(content: tuple[Node, ...], start: int, target: int) -> Node | None:
    pos = start
    for child in content:
        if pos == target:
            return child
        end = pos + child.size
        if pos < target < end:
            return _node_at(child.content, pos + 1, target)
        pos = end
    return None


def _replace_at(
    content: tuple[Node, ...],
    start: int,
    target: int,
    fn: Callable[[Node], Node],
) -> tuple[Node, ...] | None:
    pos = start
    for i, child in enumerate(content):
        end = pos + child.size
        if pos == target:
            return (*content[:i], fn(child), *content[i + 1:])
        if pos < target < end:
            inner = _replace_at(child.content, pos + 1, target, fn)
            if inner is None:
                return None
            return (*content[:i], child.with_content(inner), *content[i + 1:])
        pos = end
    return None
