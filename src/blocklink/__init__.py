"""Block/requirement link consistency engine."""
from __future__ import annotations

from blocklink.autosave import AutosaveController
from blocklink.block_index import BlockPosition, BlockPositionIndex
from blocklink.config import EngineConfig
from blocklink.document import (
    Block,
    BlockSource,
    BlockType,
    Coverage,
    DocumentSnapshot,
    LinkRecord,
    Node,
)
from blocklink.lease import LeaseManager, ViewMode
from blocklink.link_index import DriftReport, LinkDelta, LinkIndex
from blocklink.persistence import DocumentStore, PersistenceError, prepare_snapshot
from blocklink.requirements import Requirement, RequirementStatus, RequirementStore
from blocklink.transactions import (
    DocumentSession,
    ReadOnlyViewError,
    ReentrantTransactionError,
    Transaction,
)

__all__ = [
    "AutosaveController",
    "Block",
    "BlockPosition",
    "BlockPositionIndex",
    "BlockSource",
    "BlockType",
    "Coverage",
    "DocumentSession",
    "DocumentSnapshot",
    "DocumentStore",
    "DriftReport",
    "EngineConfig",
    "LeaseManager",
    "LinkDelta",
    "LinkIndex",
    "LinkRecord",
    "Node",
    "PersistenceError",
    "ReadOnlyViewError",
    "ReentrantTransactionError",
    "Requirement",
    "RequirementStatus",
    "RequirementStore",
    "Transaction",
    "ViewMode",
    "prepare_snapshot",
]
