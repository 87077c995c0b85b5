"""Requirement mirror kept consistent with link deltas.

Requirements are owned elsewhere (ingestion/classification). This module
holds the sibling store's view of them: ``status`` and ``linked_block_ids``
are a mirror of the link index and are updated from the same deltas the
index receives. ``resync`` recomputes the mirror from an index after a
rebuild.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from blocklink.document import Coverage
from blocklink.link_index import LinkDelta, LinkIndex

log = logging.getLogger(__name__)


class RequirementStatus(StrEnum):
    UNLINKED = "unlinked"
    PARTIAL = "partial"
    LINKED = "linked"
    IGNORED = "ignored"


@dataclass(slots=True)
class Requirement:
    id: str
    text: str = ""
    priority: str = "mandatory"
    status: RequirementStatus = RequirementStatus.UNLINKED
    linked_block_ids: list[str] = field(default_factory=list)
    coverage_by_block: dict[str, Coverage] = field(default_factory=dict)

    def _refresh_status(self) -> None:
        if self.status == RequirementStatus.IGNORED:
            return
        if not self.linked_block_ids:
            self.status = RequirementStatus.UNLINKED
        elif any(c == Coverage.FULL for c in self.coverage_by_block.values()):
            self.status = RequirementStatus.LINKED
        else:
            self.status = RequirementStatus.PARTIAL


class RequirementStore:
    """In-memory requirement records plus the link-delta listener."""

    def __init__(self, requirements: Iterable[Requirement] = ()) -> None:
        self._requirements: dict[str, Requirement] = {}
        self.import_requirements(requirements)

    def import_requirements(self, requirements: Iterable[Requirement]) -> None:
        for req in requirements:
            self._requirements[req.id] = req

    def get(self, req_id: str) -> Requirement | None:
        return self._requirements.get(req_id)

    def all(self) -> list[Requirement]:
        return list(self._requirements.values())

    def set_ignored(self, req_id: str, ignored: bool = True) -> None:
        req = self._requirements[req_id]
        if ignored:
            req.status = RequirementStatus.IGNORED
        else:
            req.status = RequirementStatus.UNLINKED
            req._refresh_status()

    def apply_link_delta(self, delta: LinkDelta) -> None:
        """Mirror one block's link delta onto the affected requirements."""
        for req_id in delta.removed_links:
            req = self._requirements.get(req_id)
            if req is None:
                log.debug("Delta removes unknown requirement %s", req_id)
                continue
            if delta.block_id in req.linked_block_ids:
                req.linked_block_ids.remove(delta.block_id)
            req.coverage_by_block.pop(delta.block_id, None)
            req._refresh_status()
        for record in delta.added_links:
            req = self._requirements.get(record.req_id)
            if req is None:
                log.debug("Delta adds unknown requirement %s", record.req_id)
                continue
            if delta.block_id not in req.linked_block_ids:
                req.linked_block_ids.append(delta.block_id)
            req.coverage_by_block[delta.block_id] = record.coverage
            req._refresh_status()

    def resync(self, index: LinkIndex) -> int:
        """Recompute every mirror from ``index``; returns how many changed."""
        changed = 0
        for req in self._requirements.values():
            block_ids = index.get_blocks_for_requirement(req.id)
            coverage: dict[str, Coverage] = {}
            for block_id in block_ids:
                for record in index.get_requirements_for_block(block_id):
                    if record.req_id == req.id:
                        coverage[block_id] = record.coverage
            before = (list(req.linked_block_ids), req.status)
            req.linked_block_ids = block_ids
            req.coverage_by_block = coverage
            req._refresh_status()
            if (req.linked_block_ids, req.status) != before:
                changed += 1
        if changed:
            log.info("Requirement mirror resynced: %d requirements changed", changed)
        return changed
