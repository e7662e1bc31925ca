"""
Unit tests for next-fire-time evaluation.
"""
from datetime import datetime
from types import SimpleNamespace

import pytest

from services.schedule import (
    compute_next_run,
    is_valid_schedule,
    next_fire_time,
    preview_fire_times,
)
from utils.clock import to_ms


class TestCronSchedules:
    """Five and six field cron expressions."""

    def test_five_field_expression(self):
        fire = next_fire_time("cron", "*/5 * * * *", datetime(2024, 1, 1, 0, 1))
        assert fire == datetime(2024, 1, 1, 0, 5)

    def test_next_fire_is_strictly_after(self):
        fire = next_fire_time("cron", "*/5 * * * *", datetime(2024, 1, 1, 0, 5))
        assert fire == datetime(2024, 1, 1, 0, 10)

    def test_six_field_expression_has_leading_seconds(self):
        fire = next_fire_time("cron", "30 * * * * *", datetime(2024, 1, 1, 0, 0, 0))
        assert fire == datetime(2024, 1, 1, 0, 0, 30)

    def test_timezone_is_applied(self):
        # 09:00 in Ho Chi Minh City (UTC+7) is 02:00 UTC
        fire = next_fire_time("cron", "0 9 * * *", datetime(2024, 1, 1, 0, 0), tz="Asia/Ho_Chi_Minh")
        assert fire == datetime(2024, 1, 1, 2, 0)

    @pytest.mark.parametrize("expr", ["not a cron", "61 * * * *", "* * * *", "* * * * * * *", ""])
    def test_invalid_expressions(self, expr):
        assert not is_valid_schedule("cron", expr)
        assert next_fire_time("cron", expr, datetime(2024, 1, 1)) is None

    def test_unknown_timezone_is_invalid(self):
        assert not is_valid_schedule("cron", "0 9 * * *", "Mars/Olympus_Mons")

    def test_validation_agrees_with_evaluation(self):
        assert is_valid_schedule("cron", "0 9 * * 1-5", "Europe/Berlin")
        assert next_fire_time("cron", "0 9 * * 1-5", datetime(2024, 1, 1), tz="Europe/Berlin") is not None


class TestEverySchedules:
    """Fixed intervals, free running or anchored."""

    def test_unanchored_interval(self):
        start = datetime(2024, 1, 1, 12, 0, 0)
        assert next_fire_time("every", 60000, start) == datetime(2024, 1, 1, 12, 1, 0)

    def test_anchored_interval_is_phase_locked(self):
        anchor = to_ms(datetime(2024, 1, 1, 0, 0, 0))
        fire = next_fire_time("every", 60000, datetime(2024, 1, 1, 0, 2, 30), anchor_ms=anchor)
        assert fire == datetime(2024, 1, 1, 0, 3, 0)

    def test_anchor_in_the_future_fires_at_anchor(self):
        anchor = to_ms(datetime(2024, 6, 1))
        assert next_fire_time("every", 60000, datetime(2024, 1, 1), anchor_ms=anchor) == datetime(2024, 6, 1)

    @pytest.mark.parametrize("value", [0, -1000, None, "60000", True])
    def test_invalid_intervals(self, value):
        assert not is_valid_schedule("every", value)
        assert next_fire_time("every", value, datetime(2024, 1, 1)) is None

    def test_interval_past_year_9999_has_no_fire_time(self):
        assert not is_valid_schedule("every", 10**16)
        assert next_fire_time("every", 10**16, datetime(2024, 1, 1)) is None
        anchor = to_ms(datetime(2024, 1, 1))
        assert next_fire_time("every", 10**16, datetime(2024, 1, 2), anchor_ms=anchor) is None


class TestAtSchedules:
    """One-shot timestamps."""

    def test_fires_at_timestamp(self):
        at = datetime(2024, 3, 1, 8, 30)
        assert next_fire_time("at", to_ms(at), datetime(2024, 1, 1)) == at

    def test_past_timestamp_is_due_immediately(self):
        at = datetime(2023, 1, 1)
        assert next_fire_time("at", to_ms(at), datetime(2024, 1, 1)) == at

    def test_fired_one_shot_has_no_next_run(self):
        assert next_fire_time("at", to_ms(datetime(2024, 3, 1)), datetime(2024, 1, 1), fired=True) is None

    def test_negative_timestamp_is_invalid(self):
        assert not is_valid_schedule("at", -1)

    def test_timestamp_past_year_9999_is_invalid(self):
        assert not is_valid_schedule("at", 10**17)
        assert next_fire_time("at", 10**17, datetime(2024, 1, 1)) is None
        assert is_valid_schedule("at", 253402300799000)


class TestHelpers:
    def test_preview_cron(self):
        runs = preview_fire_times("cron", "0 * * * *", datetime(2024, 1, 1, 0, 30), count=3)
        assert runs == [datetime(2024, 1, 1, 1), datetime(2024, 1, 1, 2), datetime(2024, 1, 1, 3)]

    def test_preview_one_shot_yields_single_run(self):
        runs = preview_fire_times("at", to_ms(datetime(2024, 5, 1)), datetime(2024, 1, 1), count=5)
        assert runs == [datetime(2024, 5, 1)]

    def test_unknown_schedule_type(self):
        assert not is_valid_schedule("weekly", "monday")
        assert next_fire_time("weekly", "monday", datetime(2024, 1, 1)) is None

    def test_disabled_job_has_no_next_run(self):
        job = SimpleNamespace(
            enabled=False,
            schedule_type="every",
            schedule_interval_ms=60000,
            schedule_expr=None,
            schedule_at_ms=None,
            schedule_tz=None,
            schedule_anchor_ms=None,
        )
        assert compute_next_run(job, datetime(2024, 1, 1)) is None
        job.enabled = True
        assert compute_next_run(job, datetime(2024, 1, 1)) == datetime(2024, 1, 1, 0, 1)
