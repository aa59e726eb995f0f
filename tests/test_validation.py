"""Tests for the pure input checks."""

from datetime import datetime, timedelta, timezone

import pytest

from taskflow.service.errors import ValidationError
from taskflow.service.result import Err, Ok
from taskflow.service.validation import (
    first_failure,
    format_validation_error,
    is_valid_due_date,
    is_valid_email,
    is_valid_limit,
    is_valid_message_content,
    is_valid_message_role,
    is_valid_password,
    is_valid_priority,
    is_valid_task_description,
    is_valid_task_title,
    is_valid_thread_status,
    is_valid_thread_title,
    is_valid_user_id,
    parse_due_date,
    sanitize_input,
)
from taskflow.storage.models import TaskPriority


class TestTextBounds:
    @pytest.mark.parametrize(
        "title,expected",
        [
            ("Buy milk", True),
            ("x" * 200, True),
            ("x" * 201, False),
            ("", False),
            ("   ", False),
            (None, False),
            (42, False),
        ],
    )
    def test_task_title(self, title, expected):
        assert is_valid_task_title(title) is expected

    def test_thread_title_caps_at_100(self):
        assert is_valid_thread_title("t" * 100)
        assert not is_valid_thread_title("t" * 101)

    def test_description_may_be_empty(self):
        """Descriptions only have an upper bound."""
        assert is_valid_task_description("")
        assert is_valid_task_description("d" * 2000)
        assert not is_valid_task_description("d" * 2001)
        assert not is_valid_task_description(None)

    def test_message_content(self):
        assert is_valid_message_content("hello")
        assert is_valid_message_content("m" * 5000)
        assert not is_valid_message_content("m" * 5001)
        assert not is_valid_message_content(" \n\t")


class TestEnumerations:
    def test_priority_accepts_values_and_members(self):
        assert is_valid_priority("low")
        assert is_valid_priority("high")
        assert is_valid_priority(TaskPriority.MEDIUM)
        assert not is_valid_priority("urgent")
        assert not is_valid_priority(None)

    def test_unhashable_values_are_rejected(self):
        assert not is_valid_priority(["high"])
        assert not is_valid_thread_status({"status": "active"})
        assert not is_valid_message_role(["user"])

    def test_thread_status(self):
        assert is_valid_thread_status("active")
        assert is_valid_thread_status("archived")
        assert not is_valid_thread_status("deleted")

    def test_message_role(self):
        assert is_valid_message_role("user")
        assert is_valid_message_role("assistant")
        assert not is_valid_message_role("system")


class TestDueDate:
    def test_future_is_valid(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert is_valid_due_date(now + timedelta(seconds=1), now)

    def test_now_is_not_future(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert not is_valid_due_date(now, now)
        assert not is_valid_due_date(now - timedelta(days=1), now)

    def test_naive_values_are_utc(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert is_valid_due_date(datetime(2024, 1, 2), now)

    def test_non_datetime_is_invalid(self):
        assert not is_valid_due_date("2030-01-01")
        assert not is_valid_due_date(None)

    def test_parse_iso_with_z(self):
        parsed = parse_due_date("2030-05-01T12:00:00Z")
        assert parsed == datetime(2030, 5, 1, 12, tzinfo=timezone.utc)

    def test_parse_epoch_millis(self):
        parsed = parse_due_date(1_700_000_000_000)
        assert parsed == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_parse_rejects_garbage(self):
        assert parse_due_date("next tuesday") is None
        assert parse_due_date(True) is None
        assert parse_due_date(None) is None

    def test_parse_converts_offsets_to_utc(self):
        parsed = parse_due_date("2030-05-01T14:00:00+02:00")
        assert parsed.tzinfo == timezone.utc
        assert parsed.hour == 12


class TestIdentity:
    def test_email(self):
        assert is_valid_email("a@b.co")
        assert not is_valid_email("not-an-email")
        assert not is_valid_email("a @b.co")
        assert not is_valid_email(None)

    def test_user_id_bounds(self):
        assert is_valid_user_id("u" * 100)
        assert not is_valid_user_id("u" * 101)
        assert not is_valid_user_id("")
        assert not is_valid_user_id(None)

    def test_password_minimum_length(self):
        assert is_valid_password("12345678")
        assert not is_valid_password("1234567")


class TestHelpers:
    def test_sanitize_strips_angle_brackets(self):
        assert sanitize_input("  <b>hi</b> ") == "bhi/b"

    def test_format_validation_error(self):
        assert format_validation_error("title", "too long") == "Validation error on title: too long"

    def test_limit(self):
        assert is_valid_limit(None)
        assert is_valid_limit(1)
        assert not is_valid_limit(0)
        assert not is_valid_limit(-3)
        assert not is_valid_limit(True)
        assert not is_valid_limit("5")

    def test_first_failure_reports_first_failing_field(self):
        result = first_failure(
            [
                ("title", True, "ok"),
                ("priority", False, "Priority must be low, medium, or high"),
                ("due_date", False, "Due date must be in the future"),
            ]
        )
        assert isinstance(result, Err)
        assert isinstance(result.error, ValidationError)
        assert result.error.field == "priority"
        assert result.error.detail == {"field": "priority"}

    def test_first_failure_passes(self):
        assert isinstance(first_failure([("title", True, "ok")]), Ok)
