"""Tests for blocklink.link_index: inverse maps, incremental vs rebuild, drift."""
from __future__ import annotations

import random

import pytest

from blocklink.document import (
    Coverage,
    DocumentSnapshot,
    LinkRecord,
    add_requirement_link,
    create_link_record,
    remove_requirement_link,
)
from blocklink.editing import copy_block, delete_block, make_block
from blocklink.link_index import LinkDelta, LinkIndex, compute_link_delta

BLOCK_IDS = ["b1", "b2", "b3", "b4", "b5"]
REQ_IDS = [f"REQ-{i}" for i in range(1, 8)]


def _snap(links: dict[str, list[LinkRecord]] | None = None) -> DocumentSnapshot:
    links = links or {}
    return DocumentSnapshot.from_blocks(
        make_block(f"text of {bid}", block_id=bid, links=links.get(bid, ()))
        for bid in BLOCK_IDS
    )


def _set_links(
    snap: DocumentSnapshot,
    block_id: str,
    links: tuple[LinkRecord, ...],
) -> DocumentSnapshot:
    found = snap.find_block(block_id)
    assert found is not None
    return snap.set_node_attrs(found[1], linkedRequirements=links)


def _assert_inverse(index: LinkIndex) -> None:
    for req_id in index.linked_requirement_ids():
        blocks = index.get_blocks_for_requirement(req_id)
        assert blocks, f"empty entry for {req_id}"
        for block_id in blocks:
            assert req_id in {r.req_id for r in index.get_requirements_for_block(block_id)}
    for block_id in index.linked_block_ids():
        records = index.get_requirements_for_block(block_id)
        assert records, f"empty entry for {block_id}"
        req_ids = [r.req_id for r in records]
        assert len(req_ids) == len(set(req_ids))
        for req_id in req_ids:
            assert block_id in index.get_blocks_for_requirement(req_id)


class TestScenarios:
    def test_empty_document_has_no_links(self) -> None:
        index = LinkIndex(DocumentSnapshot.empty())
        index.rebuild_from_document(DocumentSnapshot.empty())
        assert index.get_total_link_count() == 0

    def test_link_then_query(self) -> None:
        snap = _snap()
        index = LinkIndex(snap)
        rec = create_link_record("REQ-1")
        snap = _set_links(snap, "b1", (rec,))
        index.apply_incremental_update(LinkDelta("b1", (rec,), ()))
        assert index.is_requirement_linked("REQ-1")
        assert index.get_blocks_for_requirement("REQ-1") == ["b1"]
        assert index.verify_sync_with_document(snap)

    def test_unlink_prunes_entries(self) -> None:
        rec = create_link_record("REQ-1")
        snap = _snap({"b1": [rec]})
        index = LinkIndex(snap)
        index.apply_incremental_update(LinkDelta("b1", (), ("REQ-1",)))
        assert not index.has_links("b1")
        assert "REQ-1" not in index.as_dict()["req_to_blocks"]
        assert "b1" not in index.as_dict()["block_to_reqs"]

    def test_deleted_block_gone_after_rebuild(self) -> None:
        snap = _snap({"b1": [create_link_record("REQ-1")]})
        index = LinkIndex(snap)
        index.rebuild_from_document(delete_block(snap, "b1"))
        assert index.get_blocks_for_requirement("REQ-1") == []
        assert not index.has_links("b1")

    def test_two_sequential_links_stay_in_sync(self) -> None:
        snap = _snap()
        index = LinkIndex(snap)
        for req_id in ("REQ-2", "REQ-3"):
            rec = create_link_record(req_id)
            current = snap.find_block("b1")[0].linked_requirements  # type: ignore[index]
            snap = _set_links(snap, "b1", add_requirement_link(current, rec))
            index.apply_incremental_update(LinkDelta("b1", (rec,), ()))
        assert index.verify_sync_with_document(snap)
        assert index.get_link_count("b1") == 2


class TestInvariants:
    def test_rebuild_is_idempotent(self) -> None:
        snap = _snap({
            "b1": [LinkRecord("REQ-1"), LinkRecord("REQ-2")],
            "b3": [LinkRecord("REQ-1", Coverage.PARTIAL)],
        })
        index = LinkIndex(snap)
        first = index.as_dict()
        index.rebuild_from_document(snap)
        assert index.as_dict() == first

    def test_coalescing_same_pair(self) -> None:
        index = LinkIndex(_snap())
        rec = create_link_record("REQ-1")
        index.apply_incremental_update(LinkDelta("b1", (rec,), ()))
        index.apply_incremental_update(LinkDelta("b1", (create_link_record("REQ-1"),), ()))
        assert index.get_link_count("b1") == 1
        assert index.get_blocks_for_requirement("REQ-1") == ["b1"]

    def test_removing_unknown_link_is_harmless(self) -> None:
        index = LinkIndex(_snap())
        index.apply_incremental_update(LinkDelta("b9", (), ("REQ-404",)))
        assert index.get_total_link_count() == 0

    @pytest.mark.parametrize("seed", [1, 7, 42, 1337])
    def test_incremental_matches_rebuild(self, seed: int) -> None:
        rng = random.Random(seed)
        snap = _snap()
        index = LinkIndex(snap)
        touched: set[str] = set()

        for _ in range(200):
            block_id = rng.choice(BLOCK_IDS)
            req_id = rng.choice(REQ_IDS)
            current = snap.find_block(block_id)[0].linked_requirements  # type: ignore[index]
            if rng.random() < 0.6:
                rec = create_link_record(
                    req_id, rng.choice(list(Coverage)), timestamp=rng.randint(1, 10**6),
                )
                after = add_requirement_link(current, rec)
            else:
                after = remove_requirement_link(current, req_id)
            if after == current:
                continue
            snap = _set_links(snap, block_id, after)
            index.apply_incremental_update(compute_link_delta(block_id, current, after))
            touched.add(req_id)
            _assert_inverse(index)

        fresh = LinkIndex(snap)
        assert index.get_total_link_count() == fresh.get_total_link_count()
        for req_id in touched:
            assert sorted(index.get_blocks_for_requirement(req_id)) == sorted(
                fresh.get_blocks_for_requirement(req_id)
            )
        assert index.as_dict() == fresh.as_dict()
        assert index.verify_sync_with_document(snap)


class TestDuplicates:
    def test_duplicate_ids_coalesce_into_one_entry(self, caplog) -> None:
        a = make_block("x", block_id="b1", links=[LinkRecord("REQ-1")])
        b = copy_block(a).with_attrs(
            linkedRequirements=(LinkRecord("REQ-1"), LinkRecord("REQ-2")),
        )
        snap = DocumentSnapshot.from_blocks([a, b])
        with caplog.at_level("WARNING", logger="blocklink.link_index"):
            index = LinkIndex(snap)
        assert [r.req_id for r in index.get_requirements_for_block("b1")] == ["REQ-1", "REQ-2"]
        assert index.get_total_link_count() == 2
        assert "Duplicate block id" in caplog.text


class TestDrift:
    def test_verify_detects_missing_update(self) -> None:
        snap = _snap()
        index = LinkIndex(snap)
        snap = _set_links(snap, "b2", (create_link_record("REQ-1"),))
        assert not index.verify_sync_with_document(snap)
        report = index.diff_against_document(snap)
        assert not report.in_sync
        assert report.missing_blocks == ["b2"]
        index.rebuild_from_document(snap)
        assert index.verify_sync_with_document(snap)
        assert index.diff_against_document(snap).in_sync

    def test_diff_reports_mismatched_req_ids(self) -> None:
        snap = _snap({"b1": [LinkRecord("REQ-1")]})
        index = LinkIndex(snap)
        # same count, different requirement: verify passes, diff does not
        snap = _set_links(snap, "b1", (LinkRecord("REQ-2"),))
        assert index.verify_sync_with_document(snap)
        report = index.diff_against_document(snap)
        assert report.mismatched == {"b1": (["REQ-1"], ["REQ-2"])}
        assert report.to_dict()["mismatched"]["b1"] == {
            "index": ["REQ-1"], "document": ["REQ-2"],
        }

    def test_diff_reports_unexpected_blocks(self) -> None:
        snap = _snap({"b4": [LinkRecord("REQ-1")]})
        index = LinkIndex(snap)
        report = index.diff_against_document(delete_block(snap, "b4"))
        assert report.unexpected_blocks == ["b4"]


class TestComputeDelta:
    def test_added_and_removed(self) -> None:
        r1, r2, r3 = LinkRecord("REQ-1"), LinkRecord("REQ-2"), LinkRecord("REQ-3")
        delta = compute_link_delta("b1", (r1, r2), (r2, r3))
        assert delta.added_links == (r3,)
        assert delta.removed_links == ("REQ-1",)

    def test_changed_record_is_remove_plus_add(self) -> None:
        full = LinkRecord("REQ-1", Coverage.FULL)
        partial = LinkRecord("REQ-1", Coverage.PARTIAL)
        delta = compute_link_delta("b1", (full,), (partial,))
        assert delta.removed_links == ("REQ-1",)
        assert delta.added_links == (partial,)

    def test_no_change_is_empty(self) -> None:
        r1 = LinkRecord("REQ-1")
        assert compute_link_delta("b1", (r1,), (r1,)).is_empty
