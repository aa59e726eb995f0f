from datetime import datetime, timezone

import pytest

from taskflow.storage.schema import (
    MESSAGES,
    TASKS,
    ColumnSpec,
    decode_value,
    encode_value,
    plan_query,
    table_spec,
)


def test_foreign_keys_listed():
    assert [col.name for col in MESSAGES.foreign_keys] == ["thread_id"]
    assert TASKS.foreign_keys == []


def test_unsupported_column_type_rejected():
    with pytest.raises(ValueError):
        ColumnSpec("weight", "float")


def test_plan_orders_by_remaining_fields_then_tiebreaks():
    plan = plan_query(TASKS, "by_owner_due", eq={"owner_id": "u"})
    assert plan.range_field == "due_date"
    assert plan.order_fields == ("due_date", "created_at", "id")


def test_plan_full_prefix_leaves_no_range():
    plan = plan_query(TASKS, "by_owner_completed", eq={"owner_id": "u", "completed": False})
    assert plan.range_field is None
    assert plan.eq == (("owner_id", "u"), ("completed", False))
    with pytest.raises(ValueError):
        plan_query(
            TASKS, "by_owner_completed", eq={"owner_id": "u", "completed": False}, skip_nulls=True
        )


def test_plan_requires_equality():
    with pytest.raises(ValueError):
        plan_query(TASKS, "by_owner", eq={})


def test_plan_rejects_bad_order_and_limit():
    with pytest.raises(ValueError):
        plan_query(TASKS, "by_owner", eq={"owner_id": "u"}, order="sideways")
    with pytest.raises(ValueError):
        plan_query(TASKS, "by_owner", eq={"owner_id": "u"}, limit=-1)


def test_matches_treats_null_as_outside_bounded_ranges():
    plan = plan_query(
        TASKS,
        "by_owner_due",
        eq={"owner_id": "u"},
        upper=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )
    assert not plan.matches({"owner_id": "u", "due_date": None})
    assert plan.matches({"owner_id": "u", "due_date": datetime(2029, 1, 1, tzinfo=timezone.utc)})
    assert not plan.matches({"owner_id": "u", "due_date": datetime(2030, 1, 1, tzinfo=timezone.utc)})


def test_timestamp_round_trip_through_json_form():
    ts = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
    encoded = encode_value(TASKS, "created_at", ts)
    assert encoded == "2024-05-01T08:30:00+00:00"
    assert decode_value(TASKS, "created_at", encoded) == ts
    assert decode_value(TASKS, "title", encoded) == encoded


def test_unknown_table():
    with pytest.raises(ValueError):
        table_spec("projects")
