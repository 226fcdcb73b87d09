"""Tests for repeat policies and occurrence arithmetic."""

from datetime import UTC, datetime, timedelta

import pytest

from cadence.scheduling.recurrence import (
    PAYMENT_POLICIES,
    PROMPT_POLICIES,
    RepeatPolicy,
    add_months,
    advance_past,
    first_occurrence,
    next_occurrence,
    time_of_day_anchor,
)

ANCHOR = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)


class TestRepeatPolicy:
    def test_selectors_round_trip_through_values(self):
        assert RepeatPolicy.from_selector("1d") is RepeatPolicy.DAILY
        assert RepeatPolicy.from_selector(" 2W ") is RepeatPolicy.EVERY_2W
        assert RepeatPolicy.from_selector("1mo") is RepeatPolicy.MONTHLY

    def test_unknown_selector_raises(self):
        with pytest.raises(ValueError, match="Unknown repeat selector"):
            RepeatPolicy.from_selector("fortnightly")

    def test_weekly_multiples(self):
        assert RepeatPolicy.WEEKLY.interval == timedelta(days=7)
        assert RepeatPolicy.EVERY_2W.interval == timedelta(days=14)
        assert RepeatPolicy.EVERY_4W.weeks == 4

    def test_one_shot_and_monthly_have_no_fixed_interval(self):
        assert RepeatPolicy.NONE.interval is None
        assert RepeatPolicy.MONTHLY.interval is None
        assert RepeatPolicy.NONE.is_one_shot

    def test_every_policy_has_a_label(self):
        for policy in RepeatPolicy:
            assert policy.label

    def test_policies_offered_per_kind(self):
        assert RepeatPolicy.EVERY_5M in PROMPT_POLICIES
        assert RepeatPolicy.EVERY_2W not in PROMPT_POLICIES
        assert RepeatPolicy.EVERY_2W in PAYMENT_POLICIES
        assert RepeatPolicy.EVERY_5M not in PAYMENT_POLICIES
        assert PROMPT_POLICIES[0] is RepeatPolicy.NONE
        assert PAYMENT_POLICIES[0] is RepeatPolicy.NONE


class TestNextOccurrence:
    def test_one_shot_has_no_next(self):
        assert next_occurrence(RepeatPolicy.NONE, ANCHOR) is None

    @pytest.mark.parametrize(
        ("policy", "expected"),
        [
            (RepeatPolicy.EVERY_5M, timedelta(minutes=5)),
            (RepeatPolicy.EVERY_45M, timedelta(minutes=45)),
            (RepeatPolicy.EVERY_3H, timedelta(hours=3)),
            (RepeatPolicy.EVERY_12H, timedelta(hours=12)),
            (RepeatPolicy.DAILY, timedelta(days=1)),
            (RepeatPolicy.WEEKLY, timedelta(days=7)),
            (RepeatPolicy.EVERY_4W, timedelta(days=28)),
        ],
    )
    def test_fixed_intervals(self, policy, expected):
        assert next_occurrence(policy, ANCHOR) == ANCHOR + expected

    @pytest.mark.parametrize(
        "policy", [p for p in RepeatPolicy if p is not RepeatPolicy.NONE]
    )
    def test_sequence_is_strictly_increasing_and_deterministic(self, policy):
        def sequence() -> list[datetime]:
            times = [ANCHOR]
            for _ in range(15):
                nxt = next_occurrence(policy, times[-1])
                assert nxt is not None
                times.append(nxt)
            return times

        first = sequence()
        assert first == sequence()
        assert all(a < b for a, b in zip(first, first[1:], strict=False))

    def test_monthly_keeps_day_of_month(self):
        assert next_occurrence(RepeatPolicy.MONTHLY, ANCHOR) == datetime(
            2026, 4, 2, 8, 30, tzinfo=UTC
        )

    def test_monthly_rolls_over_year(self):
        dec = datetime(2026, 12, 15, 9, 0, tzinfo=UTC)
        assert next_occurrence(RepeatPolicy.MONTHLY, dec) == datetime(
            2027, 1, 15, 9, 0, tzinfo=UTC
        )

    def test_rejects_naive_datetimes(self):
        with pytest.raises(ValueError, match="Naive"):
            next_occurrence(RepeatPolicy.DAILY, datetime(2026, 3, 2, 8, 30))


class TestMonthEndClamp:
    def test_jan_31_clamps_to_feb_28(self):
        jan31 = datetime(2026, 1, 31, 9, 0, tzinfo=UTC)
        assert next_occurrence(RepeatPolicy.MONTHLY, jan31) == datetime(
            2026, 2, 28, 9, 0, tzinfo=UTC
        )

    def test_jan_31_clamps_to_feb_29_in_leap_year(self):
        jan31 = datetime(2028, 1, 31, 9, 0, tzinfo=UTC)
        assert next_occurrence(RepeatPolicy.MONTHLY, jan31) == datetime(
            2028, 2, 29, 9, 0, tzinfo=UTC
        )

    def test_add_months_clamps_to_30_day_month(self):
        mar31 = datetime(2026, 3, 31, 0, 0, tzinfo=UTC)
        assert add_months(mar31, 1) == datetime(2026, 4, 30, 0, 0, tzinfo=UTC)

    def test_add_months_multiple_months(self):
        jan31 = datetime(2026, 1, 31, 0, 0, tzinfo=UTC)
        assert add_months(jan31, 2) == datetime(2026, 3, 31, 0, 0, tzinfo=UTC)


class TestAdvancePast:
    def test_on_time_tick_matches_next_occurrence(self):
        assert advance_past(RepeatPolicy.DAILY, ANCHOR, ANCHOR) == ANCHOR + timedelta(
            days=1
        )

    def test_result_is_strictly_after_now(self):
        nxt = advance_past(RepeatPolicy.EVERY_1H, ANCHOR, ANCHOR + timedelta(hours=1))
        assert nxt == ANCHOR + timedelta(hours=2)

    def test_skips_missed_occurrences(self):
        now = datetime(2026, 3, 4, 10, 0, tzinfo=UTC)
        assert advance_past(RepeatPolicy.DAILY, ANCHOR, now) == datetime(
            2026, 3, 5, 8, 30, tzinfo=UTC
        )

    def test_one_shot_retires(self):
        assert advance_past(RepeatPolicy.NONE, ANCHOR, ANCHOR) is None


class TestFirstOccurrence:
    def test_future_anchor_is_used_as_is(self):
        anchor = ANCHOR + timedelta(minutes=30)
        assert first_occurrence(RepeatPolicy.DAILY, anchor, ANCHOR) == anchor

    def test_anchor_equal_to_now_fires_now(self):
        assert first_occurrence(RepeatPolicy.DAILY, ANCHOR, ANCHOR) == ANCHOR

    def test_past_daily_anchor_moves_to_tomorrow(self):
        anchor = ANCHOR - timedelta(minutes=30)
        assert first_occurrence(RepeatPolicy.DAILY, anchor, ANCHOR) == anchor + timedelta(
            days=1
        )

    def test_past_one_shot_anchor_moves_to_tomorrow(self):
        anchor = ANCHOR - timedelta(hours=2)
        assert first_occurrence(RepeatPolicy.NONE, anchor, ANCHOR) == anchor + timedelta(
            days=1
        )

    def test_past_interval_anchor_steps_along_cadence(self):
        anchor = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
        now = datetime(2026, 3, 2, 8, 31, tzinfo=UTC)
        assert first_occurrence(RepeatPolicy.EVERY_45M, anchor, now) == datetime(
            2026, 3, 2, 8, 45, tzinfo=UTC
        )
        assert first_occurrence(RepeatPolicy.EVERY_15M, anchor, now) == datetime(
            2026, 3, 2, 8, 45, tzinfo=UTC
        )

    def test_past_monthly_anchor_does_not_drift(self):
        anchor = datetime(2026, 1, 31, 9, 0, tzinfo=UTC)
        assert first_occurrence(RepeatPolicy.MONTHLY, anchor, ANCHOR) == datetime(
            2026, 3, 31, 9, 0, tzinfo=UTC
        )

    def test_time_of_day_anchor(self):
        anchor = time_of_day_anchor(ANCHOR.date(), 9, 5)
        assert anchor == datetime(2026, 3, 2, 9, 5, tzinfo=UTC)
