"""Tests for blocklink.requirements mirror."""
from __future__ import annotations

from blocklink.document import Coverage, DocumentSnapshot, LinkRecord
from blocklink.editing import make_block
from blocklink.link_index import LinkDelta, LinkIndex
from blocklink.requirements import Requirement, RequirementStatus, RequirementStore


def _store() -> RequirementStore:
    return RequirementStore([
        Requirement("REQ-1", "The system shall log in"),
        Requirement("REQ-2", "The system shall log out", priority="optional"),
    ])


class TestApplyLinkDelta:
    def test_full_link_marks_linked(self) -> None:
        store = _store()
        store.apply_link_delta(LinkDelta("b1", (LinkRecord("REQ-1"),), ()))
        req = store.get("REQ-1")
        assert req is not None
        assert req.status is RequirementStatus.LINKED
        assert req.linked_block_ids == ["b1"]

    def test_partial_only_marks_partial(self) -> None:
        store = _store()
        store.apply_link_delta(LinkDelta("b1", (LinkRecord("REQ-2", Coverage.PARTIAL),), ()))
        assert store.get("REQ-2").status is RequirementStatus.PARTIAL  # type: ignore[union-attr]

    def test_any_full_wins(self) -> None:
        store = _store()
        store.apply_link_delta(LinkDelta("b1", (LinkRecord("REQ-1", Coverage.PARTIAL),), ()))
        store.apply_link_delta(LinkDelta("b2", (LinkRecord("REQ-1", Coverage.FULL),), ()))
        req = store.get("REQ-1")
        assert req.status is RequirementStatus.LINKED  # type: ignore[union-attr]
        assert req.linked_block_ids == ["b1", "b2"]  # type: ignore[union-attr]

    def test_unlink_last_block_reverts(self) -> None:
        store = _store()
        store.apply_link_delta(LinkDelta("b1", (LinkRecord("REQ-1"),), ()))
        store.apply_link_delta(LinkDelta("b1", (), ("REQ-1",)))
        req = store.get("REQ-1")
        assert req.status is RequirementStatus.UNLINKED  # type: ignore[union-attr]
        assert req.linked_block_ids == []  # type: ignore[union-attr]

    def test_unknown_requirement_ignored(self) -> None:
        store = _store()
        store.apply_link_delta(LinkDelta("b1", (LinkRecord("REQ-404"),), ("REQ-405",)))
        assert store.get("REQ-404") is None

    def test_ignored_status_is_sticky(self) -> None:
        store = _store()
        store.set_ignored("REQ-1")
        store.apply_link_delta(LinkDelta("b1", (LinkRecord("REQ-1"),), ()))
        req = store.get("REQ-1")
        assert req.status is RequirementStatus.IGNORED  # type: ignore[union-attr]
        assert req.linked_block_ids == ["b1"]  # type: ignore[union-attr]
        store.set_ignored("REQ-1", False)
        assert req.status is RequirementStatus.LINKED  # type: ignore[union-attr]


class TestResync:
    def test_resync_from_index(self) -> None:
        snap = DocumentSnapshot.from_blocks([
            make_block("a", block_id="b1", links=[LinkRecord("REQ-1", Coverage.PARTIAL)]),
            make_block("b", block_id="b2", links=[LinkRecord("REQ-1"), LinkRecord("REQ-2")]),
        ])
        store = _store()
        assert store.resync(LinkIndex(snap)) == 2
        req1 = store.get("REQ-1")
        assert req1.linked_block_ids == ["b1", "b2"]  # type: ignore[union-attr]
        assert req1.coverage_by_block == {  # type: ignore[union-attr]
            "b1": Coverage.PARTIAL, "b2": Coverage.FULL,
        }
        assert req1.status is RequirementStatus.LINKED  # type: ignore[union-attr]
        assert store.resync(LinkIndex(snap)) == 0

    def test_resync_clears_stale_mirror(self) -> None:
        store = _store()
        store.apply_link_delta(LinkDelta("b1", (LinkRecord("REQ-1"),), ()))
        assert store.resync(LinkIndex(DocumentSnapshot.empty())) == 1
        assert store.get("REQ-1").status is RequirementStatus.UNLINKED  # type: ignore[union-attr]

    def test_all_and_import(self) -> None:
        store = RequirementStore()
        store.import_requirements([Requirement("REQ-9")])
        assert [r.id for r in store.all()] == ["REQ-9"]
