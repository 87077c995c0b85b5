"""Block-level editing primitives.

Stand-ins for the host editor's structural commands. Each function takes a
snapshot and returns a new one; none of them touches an index. Sessions wrap
them in transactions (see ``blocklink.transactions``).

Duplication policy: a block whose id would collide with one already in the
document gets a fresh id AND an empty ``linkedRequirements``. Links are
claims about one specific block; a copy has to be linked on its own.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace

from blocklink.document import (
    BLOCK_NODE,
    TEXT_NODE,
    Block,
    BlockSource,
    BlockType,
    DocumentSnapshot,
    LinkRecord,
    Node,
    add_requirement_link,
    generate_block_id,
)

_TEXTBLOCK_TYPES = frozenset({"paragraph", "heading", "codeBlock"})


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def _text_children(text: str) -> tuple[Node, ...]:
    return (Node(TEXT_NODE, text=text),) if text else ()


def _inner_node(block_type: BlockType, text: str) -> Node:
    if block_type == BlockType.HEADING:
        return Node("heading", {"level": 1}, _text_children(text))
    if block_type == BlockType.CODE:
        return Node("codeBlock", {}, _text_children(text))
    if block_type == BlockType.LIST:
        para = Node("paragraph", {}, _text_children(text))
        return Node("bulletList", {}, (Node("listItem", {}, (para,)),))
    if block_type == BlockType.TABLE:
        para = Node("paragraph", {}, _text_children(text))
        cell = Node("tableCell", {}, (para,))
        return Node("table", {}, (Node("tableRow", {}, (cell,)),))
    return Node("paragraph", {}, _text_children(text))


def make_block(
    text: str = "",
    *,
    block_type: BlockType = BlockType.PARAGRAPH,
    source: BlockSource = BlockSource.MANUAL,
    block_id: str | None = None,
    links: Iterable[LinkRecord] = (),
) -> Node:
    """Build a ``docBlock`` wrapper around one inner block node."""
    attrs = {
        "id": block_id or generate_block_id(),
        "blockType": block_type,
        "source": source,
        "linkedRequirements": tuple(links),
    }
    return Node(BLOCK_NODE, attrs, (_inner_node(block_type, text),))


def block_text(node: Node) -> str:
    return node.text_content()


# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------

def block_index_of(snapshot: DocumentSnapshot, block_id: str) -> int:
    """Index of a top-level block; raises KeyError when absent."""
    for i, node in enumerate(snapshot.blocks):
        if node.block_id == block_id:
            return i
    raise KeyError(block_id)


def _present_ids(snapshot: DocumentSnapshot) -> set[str]:
    return set(snapshot.block_ids())


def reidentify(node: Node, *, source: BlockSource | None = None) -> Node:
    """Copy of ``node`` with a fresh id and no links."""
    attrs = {"id": generate_block_id(), "linkedRequirements": ()}
    if source is not None:
        attrs["source"] = source
    return node.with_attrs(**attrs)


def _with_text(node: Node, text: str) -> Node:
    """Replace the text of the first textblock inside ``node``."""
    if node.type in _TEXTBLOCK_TYPES:
        return node.with_content(_text_children(text))
    for i, child in enumerate(node.content):
        if child.text is None and _has_textblock(child):
            updated = _with_text(child, text)
            return node.with_content((*node.content[:i], updated, *node.content[i + 1:]))
    return node


def _has_textblock(node: Node) -> bool:
    if node.type in _TEXTBLOCK_TYPES:
        return True
    return any(_has_textblock(child) for child in node.content if child.text is None)


# ---------------------------------------------------------------------------
# Structural edits
# ---------------------------------------------------------------------------

def insert_blocks(
    snapshot: DocumentSnapshot,
    index: int,
    nodes: Iterable[Node],
) -> DocumentSnapshot:
    blocks = list(snapshot.blocks)
    index = max(0, min(index, len(blocks)))
    blocks[index:index] = list(nodes)
    return snapshot.with_blocks(blocks)


def delete_block(snapshot: DocumentSnapshot, block_id: str) -> DocumentSnapshot:
    idx = block_index_of(snapshot, block_id)
    blocks = list(snapshot.blocks)
    del blocks[idx]
    return snapshot.with_blocks(blocks)


def move_block(
    snapshot: DocumentSnapshot,
    block_id: str,
    to_index: int,
) -> DocumentSnapshot:
    """Move a block so that it ends up at ``to_index`` (drag and drop)."""
    idx = block_index_of(snapshot, block_id)
    blocks = list(snapshot.blocks)
    node = blocks.pop(idx)
    to_index = max(0, min(to_index, len(blocks)))
    blocks.insert(to_index, node)
    return snapshot.with_blocks(blocks)


def replace_block_text(
    snapshot: DocumentSnapshot,
    block_id: str,
    text: str,
) -> DocumentSnapshot:
    idx = block_index_of(snapshot, block_id)
    blocks = list(snapshot.blocks)
    blocks[idx] = _with_text(blocks[idx], text)
    return snapshot.with_blocks(blocks)


def split_block(
    snapshot: DocumentSnapshot,
    block_id: str,
    offset: int,
) -> tuple[DocumentSnapshot, str]:
    """Split a block's text at ``offset``.

    The head keeps the id and links; the tail becomes a new block with a
    fresh id and no links. Returns the new snapshot and the tail's id.
    """
    idx = block_index_of(snapshot, block_id)
    head = snapshot.blocks[idx]
    text = block_text(head)
    offset = max(0, min(offset, len(text)))
    block = Block.from_node(head)
    tail = make_block(
        text[offset:],
        block_type=block.block_type,
        source=block.source,
    )
    blocks = list(snapshot.blocks)
    blocks[idx] = _with_text(head, text[:offset])
    blocks.insert(idx + 1, tail)
    return snapshot.with_blocks(blocks), str(tail.block_id)


def merge_blocks(
    snapshot: DocumentSnapshot,
    first_id: str,
    second_id: str,
) -> tuple[DocumentSnapshot, tuple[LinkRecord, ...]]:
    """Join ``second`` into ``first``.

    Links are coalesced by req_id with ``first``'s records winning. Returns
    the new snapshot and the records ``first`` gained.
    """
    first_idx = block_index_of(snapshot, first_id)
    second_idx = block_index_of(snapshot, second_id)
    if first_idx == second_idx:
        raise ValueError("Cannot merge a block with itself")
    first = snapshot.blocks[first_idx]
    second = snapshot.blocks[second_idx]

    links = first.linked_requirements
    gained: list[LinkRecord] = []
    for record in second.linked_requirements:
        merged = add_requirement_link(links, record)
        if merged is not links:
            gained.append(record)
            links = merged

    joined = _with_text(first, block_text(first) + block_text(second))
    joined = joined.with_attrs(linkedRequirements=links)
    blocks = list(snapshot.blocks)
    blocks[first_idx] = joined
    del blocks[second_idx]
    return snapshot.with_blocks(blocks), tuple(gained)


def duplicate_block(
    snapshot: DocumentSnapshot,
    block_id: str,
) -> tuple[DocumentSnapshot, str]:
    """Insert a copy right after ``block_id``; the copy gets a fresh id, no links."""
    idx = block_index_of(snapshot, block_id)
    copy = reidentify(snapshot.blocks[idx])
    blocks = list(snapshot.blocks)
    blocks.insert(idx + 1, copy)
    return snapshot.with_blocks(blocks), str(copy.block_id)


def paste_blocks(
    snapshot: DocumentSnapshot,
    index: int,
    nodes: Iterable[Node],
) -> tuple[DocumentSnapshot, list[tuple[str, str]]]:
    """Insert pasted blocks, re-identifying any whose id is already taken.

    Colliding blocks lose their links. Returns the new snapshot and the
    ``(old_id, new_id)`` pairs that were re-identified.
    """
    taken = _present_ids(snapshot)
    renamed: list[tuple[str, str]] = []
    incoming: list[Node] = []
    for node in nodes:
        if not node.is_block:
            incoming.append(node)
            continue
        old_id = node.block_id or ""
        if not old_id or old_id in taken:
            node = reidentify(node, source=BlockSource.PASTE)
            renamed.append((old_id, str(node.block_id)))
        else:
            node = node.with_attrs(source=BlockSource.PASTE)
        taken.add(str(node.block_id))
        incoming.append(node)
    return insert_blocks(snapshot, index, incoming), renamed


def reidentify_duplicates(
    snapshot: DocumentSnapshot,
) -> tuple[DocumentSnapshot, list[tuple[str, str]]]:
    """Give every repeated block id after the first a fresh id and no links."""
    seen: set[str] = set()
    renamed: list[tuple[str, str]] = []
    blocks: list[Node] = []
    for node in snapshot.blocks:
        block_id = node.block_id
        if node.is_block and block_id is not None and block_id in seen:
            node = reidentify(node)
            renamed.append((block_id, str(node.block_id)))
        if node.block_id:
            seen.add(node.block_id)
        blocks.append(node)
    if not renamed:
        return snapshot, []
    return snapshot.with_blocks(blocks), renamed


def find_duplicate_block_ids(snapshot: DocumentSnapshot) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for block_id in snapshot.block_ids():
        if block_id in seen and block_id not in dupes:
            dupes.append(block_id)
        seen.add(block_id)
    return dupes


def copy_block(node: Node) -> Node:
    """Verbatim copy of a block node (clipboard payload), identity included."""
    return replace(node)
