"""Tests for the row model

Tests: table registry, data bag validation, wire decoding (flat, nested,
legacy updated_by), push serialization, priority ordering
"""
import pytest

from synclayer.rows import (
    ActionLogData,
    ChecklistActionData,
    ChecklistSetData,
    PriorityOrder,
    Row,
    TABLES,
    get_schema,
    encode_updated_by,
    register_table,
    split_legacy_updated_by,
    split_updated_by,
)


class TestPriorityOrder:
    """Tests for the explicit tie-break table."""

    def test_later_class_ranks_higher(self):
        order = PriorityOrder(("desktop", "mobile"))
        assert order.rank("mobile") > order.rank("desktop")

    def test_unknown_and_missing_rank_lowest(self):
        order = PriorityOrder(("desktop", "mobile"))
        assert order.rank("tablet") == PriorityOrder.UNRANKED
        assert order.rank(None) == PriorityOrder.UNRANKED
        assert order.rank("desktop") > PriorityOrder.UNRANKED

    def test_duplicate_classes_rejected(self):
        with pytest.raises(ValueError):
            PriorityOrder(("mobile", "mobile"))


class TestLegacyUpdatedBy:
    """Tests for decoding "<tag>|<device>" writer ids."""

    def test_mobile_tag(self):
        assert split_legacy_updated_by("9|dev-1") == ("mobile", "dev-1")

    def test_desktop_tag(self):
        assert split_legacy_updated_by("5|dev-2") == ("desktop", "dev-2")

    def test_plain_device_id_untouched(self):
        assert split_legacy_updated_by("dev-3") == (None, "dev-3")

    def test_unknown_tag_untouched(self):
        assert split_legacy_updated_by("7|dev-4") == (None, "7|dev-4")

    def test_empty(self):
        assert split_legacy_updated_by(None) == (None, None)


class TestTaggedUpdatedBy:
    """Tests for the "<class>|<device>" writer ids sent on push."""

    def test_encode(self):
        assert encode_updated_by("mobile", "dev-1") == "mobile|dev-1"
        assert encode_updated_by(None, "dev-1") == "dev-1"
        assert encode_updated_by("mobile", None) is None

    def test_split_class_tag(self):
        assert split_updated_by("desktop|dev-1") == ("desktop", "dev-1")

    def test_split_legacy_digit_tag(self):
        assert split_updated_by("9|dev-1") == ("mobile", "dev-1")

    def test_split_plain_and_unknown_digit(self):
        assert split_updated_by("dev-3") == (None, "dev-3")
        assert split_updated_by("7|dev-4") == (None, "7|dev-4")
        assert split_updated_by(None) == (None, None)


class TestTableRegistry:
    """Tests for the registered table variants."""

    def test_default_tables_registered(self):
        for name in ("checklist_sets", "checklist_actions", "checklist_action_logs", "dictionary_entries"):
            assert name in TABLES

    def test_foreign_keys(self):
        assert get_schema("checklist_actions").foreign_keys == ("set_id",)
        assert get_schema("checklist_action_logs").foreign_keys == ("set_id", "action_id")
        assert get_schema("checklist_sets").foreign_keys == ()

    def test_unknown_table_raises(self):
        with pytest.raises(ValueError, match="Unknown table"):
            get_schema("nope")

    def test_reregistering_same_schema_is_allowed(self):
        schema = register_table("checklist_sets", ChecklistSetData)
        assert schema is not None
        assert TABLES["checklist_sets"].data_type is ChecklistSetData

    def test_reregistering_different_schema_fails(self):
        with pytest.raises(ValueError):
            register_table("checklist_sets", ChecklistActionData)


class TestRow:
    """Tests for Row construction and serialization."""

    def test_dict_data_becomes_typed_bag(self):
        row = Row(table="checklist_sets", id="s1", data={"title": "Morning", "order": 1})
        assert isinstance(row.data, ChecklistSetData)
        assert row.data.title == "Morning"

    def test_missing_data_is_empty_bag(self):
        row = Row(table="checklist_sets", id="s1")
        assert row.data == ChecklistSetData()

    def test_wrong_bag_type_rejected(self):
        with pytest.raises(TypeError):
            Row(table="checklist_sets", id="s1", data=ActionLogData())

    def test_unknown_ref_rejected(self):
        with pytest.raises(ValueError, match="foreign keys"):
            Row(table="checklist_sets", id="s1", refs={"set_id": "x"})

    def test_id_required(self):
        with pytest.raises(ValueError):
            Row(table="checklist_sets", id="")

    def test_tombstone(self):
        assert Row(table="checklist_sets", id="s1", deleted_at=5).is_tombstone
        assert not Row(table="checklist_sets", id="s1").is_tombstone

    def test_push_dict_shape(self):
        row = Row(
            table="checklist_actions",
            id="a1",
            data=ChecklistActionData(title="Stretch", order=2, is_done=False),
            updated_at=100,
            updated_by="dev-1",
            priority_class="mobile",
            refs={"set_id": "s1"},
        )
        assert row.to_push_dict() == {
            "id": "a1",
            "set_id": "s1",
            "updated_at": 100,
            "updated_by": "mobile|dev-1",
            "deleted_at": None,
            "data": {"title": "Stretch", "order": 2, "is_done": False},
        }

    def test_push_dict_without_class_keeps_plain_writer(self):
        row = Row(table="checklist_sets", id="s1", updated_at=1, updated_by="dev-1")
        assert row.to_push_dict()["updated_by"] == "dev-1"

    def test_class_survives_push_then_pull(self):
        pushed = Row(table="checklist_sets", id="s1", data={"title": "X"},
                     updated_at=100, updated_by="A", priority_class="mobile").to_push_dict()
        stored = {k: pushed[k] for k in ("id", "updated_at", "updated_by", "deleted_at")}
        stored.update(pushed["data"])

        pulled = Row.from_wire("checklist_sets", stored)
        assert (pulled.updated_by, pulled.priority_class) == ("A", "mobile")

    def test_flat_dict_shape(self):
        row = Row(table="checklist_sets", id="s1", data={"title": "T", "order": 0},
                  updated_at=1, updated_by="d", user_id="demo")
        flat = row.to_dict()
        assert flat["title"] == "T"
        assert flat["user_id"] == "demo"
        assert "data" not in flat


class TestRowFromWire:
    """Tests for decoding pulled and pushed row objects."""

    def test_flat_pulled_row(self):
        row = Row.from_wire("checklist_actions", {
            "id": "a1",
            "user_id": "demo",
            "set_id": "s1",
            "title": "Read",
            "order": 3,
            "is_done": True,
            "updated_at": 200,
            "updated_by": "dev-1",
            "priority_class": "desktop",
            "deleted_at": None,
            "created_at": "ignored",
        })
        assert row.refs == {"set_id": "s1"}
        assert row.data == ChecklistActionData(title="Read", order=3, is_done=True)
        assert row.updated_at == 200
        assert row.priority_class == "desktop"
        assert row.user_id == "demo"

    def test_nested_pushed_row(self):
        row = Row.from_wire("checklist_sets", {
            "id": "s1",
            "updated_at": 5,
            "updated_by": "dev",
            "data": {"title": "Nested", "order": 1},
        })
        assert row.data.title == "Nested"

    def test_legacy_updated_by_decoded(self):
        row = Row.from_wire("checklist_sets", {"id": "s1", "updated_at": 1, "updated_by": "9|phone"})
        assert row.priority_class == "mobile"
        assert row.updated_by == "phone"

    def test_explicit_priority_class_wins_over_legacy_tag(self):
        row = Row.from_wire("checklist_sets", {
            "id": "s1", "updated_at": 1, "updated_by": "9|phone", "priority_class": "desktop",
        })
        assert row.priority_class == "desktop"
        assert row.updated_by == "phone"

    def test_class_tag_decoded(self):
        row = Row.from_wire("checklist_sets", {"id": "s1", "updated_at": 1, "updated_by": "tablet|t-1"})
        assert (row.priority_class, row.updated_by) == ("tablet", "t-1")

    def test_string_timestamps_coerced(self):
        row = Row.from_wire("checklist_sets", {"id": "s1", "updated_at": "42", "deleted_at": "43"})
        assert row.updated_at == 42
        assert row.deleted_at == 43

    def test_bad_timestamp_rejected(self):
        with pytest.raises(ValueError):
            Row.from_wire("checklist_sets", {"id": "s1", "updated_at": "soon"})

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            Row.from_wire("checklist_sets", ["s1"])

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            Row.from_wire("checklist_sets", {"title": "no id"})
