"""Tests for the dominance merge

Tests: convergence under permutation, idempotent re-application, tombstone
precedence and resurrection, configurable tie-break, two-device scenario
"""
import itertools

import pytest

from synclayer.merge import DominanceRule, RowStore
from synclayer.rows import PriorityOrder, Row


def make(row_id="s1", updated_at=100, updated_by="A", title="X",
         priority_class=None, deleted_at=None, table="checklist_sets"):
    return Row(
        table=table,
        id=row_id,
        data={"title": title, "order": 0},
        updated_at=updated_at,
        updated_by=updated_by,
        priority_class=priority_class,
        deleted_at=deleted_at,
    )


def final_state(rows, rule=None):
    store = RowStore(rule)
    store.apply(rows)
    return store.snapshot()


class TestDominanceRule:
    """Tests for the ordering of competing versions."""

    def test_later_updated_at_wins(self):
        rule = DominanceRule()
        assert rule.dominates(make(updated_at=101), make(updated_at=100))
        assert not rule.dominates(make(updated_at=99), make(updated_at=100))

    def test_anything_beats_nothing(self):
        assert DominanceRule().dominates(make(), None)

    def test_equal_version_does_not_dominate(self):
        assert not DominanceRule().dominates(make(), make())

    def test_priority_class_breaks_ties(self):
        rule = DominanceRule(PriorityOrder(("desktop", "mobile")))
        mobile = make(updated_by="B", priority_class="mobile", title="M")
        desktop = make(updated_by="Z", priority_class="desktop", title="D")
        assert rule.dominates(mobile, desktop)
        assert not rule.dominates(desktop, mobile)

    def test_reversed_order_flips_tie_winner(self):
        rule = DominanceRule(PriorityOrder(("mobile", "desktop")))
        mobile = make(updated_by="B", priority_class="mobile")
        desktop = make(updated_by="A", priority_class="desktop")
        assert rule.winner(mobile, desktop) is desktop

    def test_updated_by_breaks_remaining_ties_lexically(self):
        rule = DominanceRule()
        assert rule.winner(make(updated_by="A", title="a"), make(updated_by="B", title="b")).updated_by == "B"

    def test_tombstone_beats_live_on_full_tie(self):
        rule = DominanceRule()
        live = make()
        tomb = make(deleted_at=100)
        assert rule.winner(live, tomb) is tomb

    def test_timestamp_beats_priority(self):
        rule = DominanceRule(PriorityOrder(("desktop", "mobile")))
        assert rule.dominates(make(updated_at=101, priority_class="desktop"),
                              make(updated_at=100, priority_class="mobile"))

    def test_foreign_keys_break_remaining_ties(self):
        rule = DominanceRule()
        versions = [
            Row(table="checklist_actions", id="a1", data={"title": "Walk"},
                updated_at=100, updated_by="A", refs={"set_id": set_id})
            for set_id in ("s1", "s2")
        ]
        assert rule.winner(*versions) is versions[1]
        assert rule.winner(*reversed(versions)) is versions[1]
        assert final_state(versions) == final_state(list(reversed(versions)))

    def test_different_rows_cannot_be_compared(self):
        with pytest.raises(ValueError):
            DominanceRule().dominates(make(row_id="s1"), make(row_id="s2"))


class TestConvergence:
    """Applying the same writes in any order gives the same state."""

    WRITES = [
        make(updated_at=100, updated_by="A", title="a1", priority_class="desktop"),
        make(updated_at=100, updated_by="B", title="b1", priority_class="mobile"),
        make(updated_at=100, updated_by="C", title="c1"),
        make(updated_at=90, updated_by="A", title="old"),
        make(updated_at=100, updated_by="B", title="b1", priority_class="mobile", deleted_at=100),
        make(row_id="s2", updated_at=5, updated_by="A", title="other"),
        make(row_id="s2", updated_at=6, updated_by="B", title="other2"),
    ]

    def test_all_permutations_converge(self):
        expected = final_state(self.WRITES)
        for permutation in itertools.permutations(self.WRITES):
            assert final_state(permutation) == expected

    def test_expected_winners(self):
        state = final_state(self.WRITES)
        assert state[("checklist_sets", "s1")].is_tombstone
        assert state[("checklist_sets", "s2")].data.title == "other2"

    def test_reapplying_is_idempotent(self):
        store = RowStore()
        first = store.apply(self.WRITES)
        once = store.snapshot()
        second = store.apply(self.WRITES)
        assert store.snapshot() == once
        assert first.changed
        assert not second.changed
        assert len(second.discarded) == len(self.WRITES)


class TestTombstones:
    """Tests for delete/resurrect through the merge."""

    def test_later_tombstone_hides_row(self):
        store = RowStore()
        store.apply([make(updated_at=100)])
        store.apply([make(updated_at=200, deleted_at=200)])
        assert store.live_rows("checklist_sets") == []
        assert store.get("checklist_sets", "s1").is_tombstone

    def test_later_live_write_resurrects(self):
        store = RowStore()
        store.apply([make(updated_at=100), make(updated_at=200, deleted_at=200)])
        store.apply([make(updated_at=300, title="back")])
        live = store.live_rows("checklist_sets")
        assert [row.data.title for row in live] == ["back"]

    def test_stale_tombstone_ignored(self):
        store = RowStore()
        store.apply([make(updated_at=300, title="fresh")])
        result = store.apply([make(updated_at=200, deleted_at=200)])
        assert not result.changed
        assert len(store.live_rows("checklist_sets")) == 1


class TestTwoDeviceScenario:
    """Device A and B write the same row at the same updated_at."""

    def test_both_converge_on_tie_winner(self):
        rule = DominanceRule(PriorityOrder(("desktop", "mobile")))
        a_write = make(updated_at=100, updated_by="A", title="X", priority_class="mobile")
        b_write = make(updated_at=100, updated_by="B", title="Y", priority_class="desktop")

        device_a = RowStore(rule)
        device_b = RowStore(rule)
        device_a.apply([a_write])
        device_b.apply([b_write])

        # Both pull everything the server has seen
        device_a.apply_diffs({"checklist_sets": [a_write, b_write]})
        device_b.apply_diffs({"checklist_sets": [b_write, a_write]})

        assert device_a.get("checklist_sets", "s1").data.title == "X"
        assert device_b.get("checklist_sets", "s1").data.title == "X"


class TestRowStore:
    """Tests for store bookkeeping."""

    def test_tables_are_separate(self):
        store = RowStore()
        store.apply([make(row_id="x"), Row(table="dictionary_entries", id="x", data={"term": "t"},
                                           updated_at=1, updated_by="A")])
        assert len(store) == 2
        assert [r.id for r in store.all_rows("dictionary_entries")] == ["x"]

    def test_clear(self):
        store = RowStore()
        store.apply([make()])
        store.clear()
        assert len(store) == 0
