from datetime import UTC, date, datetime, timedelta

import pytest
from pytest_assume.plugin import assume
from pytz import timezone

from medisort.helpers.config_models.scheduling import SchedulingModel
from medisort.helpers.recurrence import (
    classify,
    is_today,
    is_upcoming_within,
    occurs_on,
    weekday,
)
from medisort.models.reminder import FrequencyEnum, StateEnum
from tests.conftest import make_reminder


def test_weekday() -> None:
    """
    Test Sunday is 0 and Monday is 1.
    """
    assume(weekday(date(2023, 12, 31)) == 0)  # Sunday
    assume(weekday(date(2024, 1, 1)) == 1)  # Monday
    assume(weekday(date(2024, 1, 6)) == 6)  # Saturday


@pytest.mark.repeat(10)  # Catch hidden state between calls
def test_deterministic() -> None:
    """
    Test classifying twice gives the same result and leaves the reminder untouched.
    """
    reminder = make_reminder(days_of_week=[1, 3, 5])
    before = reminder.model_dump()
    now = datetime(2024, 1, 3, 9, 0, 30, tzinfo=UTC)

    first = classify(reminder, now)
    second = classify(reminder, now)

    assume(first == second)
    assume(reminder.model_dump() == before)


@pytest.mark.parametrize(
    "now, state",
    [
        pytest.param(
            datetime(2024, 1, 1, 8, 59, 59, tzinfo=UTC),
            StateEnum.UPCOMING,
            id="one_second_before",
        ),
        pytest.param(
            datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC),
            StateEnum.DUE,
            id="on_time",
        ),
        pytest.param(
            datetime(2024, 1, 1, 9, 0, 30, tzinfo=UTC),
            StateEnum.DUE,
            id="scenario_a",
        ),
        pytest.param(
            datetime(2024, 1, 1, 9, 0, 59, tzinfo=UTC),
            StateEnum.DUE,
            id="end_of_tolerance",
        ),
        pytest.param(
            datetime(2024, 1, 1, 9, 1, 0, 999999, tzinfo=UTC),
            StateEnum.DUE,
            id="sub_second_ignored",
        ),
        pytest.param(
            datetime(2024, 1, 1, 9, 1, 1, tzinfo=UTC),
            StateEnum.OVERDUE,
            id="after_tolerance",
        ),
        pytest.param(
            datetime(2024, 1, 1, 23, 59, 59, tzinfo=UTC),
            StateEnum.OVERDUE,
            id="end_of_day",
        ),
        pytest.param(
            datetime(2024, 1, 2, 8, 0, 0, tzinfo=UTC),
            StateEnum.UPCOMING,
            id="next_day_rolls_over",
        ),
    ],
)
def test_tolerance_boundary(now: datetime, state: StateEnum) -> None:
    """
    Test the due window is inclusive of the tolerance, and overdue never survives the day.
    """
    reminder = make_reminder(time_of_day="09:00")
    assume(classify(reminder, now).state == state)


def test_upcoming_seconds() -> None:
    """
    Test the next occurrence is today when the time is not reached yet.
    """
    res = classify(
        make_reminder(time_of_day="09:00"),
        datetime(2024, 1, 1, 8, 59, 59, tzinfo=UTC),
    )
    assume(res.next_occurrence_at == datetime(2024, 1, 1, 9, 0, tzinfo=UTC))
    assume(res.scheduled_at == res.next_occurrence_at)
    assume(res.seconds_from_now == 1)


def test_day_of_week_filter() -> None:
    """
    Test a Monday, Wednesday, Friday reminder evaluated on a Tuesday.
    """
    reminder = make_reminder(days_of_week=[1, 3, 5])
    tuesday = datetime(2024, 1, 2, 9, 0, 30, tzinfo=UTC)

    res = classify(reminder, tuesday)

    assume(res.state == StateEnum.UPCOMING)
    assume(res.next_occurrence_at == datetime(2024, 1, 3, 9, 0, tzinfo=UTC))


def test_weekly_single_day() -> None:
    """
    Test a Monday only weekly reminder evaluated on a Tuesday at the same time.
    """
    reminder = make_reminder(days_of_week=[1], frequency=FrequencyEnum.WEEKLY)
    tuesday = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)

    res = classify(reminder, tuesday)

    assume(res.state == StateEnum.UPCOMING)
    assume(res.next_occurrence_at == datetime(2024, 1, 8, 9, 0, tzinfo=UTC))
    assume(res.seconds_from_now == int(timedelta(days=6).total_seconds()))


def test_weekly_defaults_to_creation_day() -> None:
    """
    Test a weekly reminder without days repeats on its creation weekday.
    """
    reminder = make_reminder(frequency=FrequencyEnum.WEEKLY)  # Created on a Monday
    assume(occurs_on(reminder, date(2024, 1, 8)))
    assume(not occurs_on(reminder, date(2024, 1, 9)))
    assume(
        classify(reminder, datetime(2024, 1, 8, 9, 0, 10, tzinfo=UTC)).state
        == StateEnum.DUE
    )


def test_monthly_clamped() -> None:
    """
    Test a reminder created on the 31st occurs on the last day of shorter months.
    """
    reminder = make_reminder(
        created_at=datetime(2024, 1, 31, tzinfo=UTC),
        frequency=FrequencyEnum.MONTHLY,
    )
    assume(occurs_on(reminder, date(2024, 2, 29)))
    assume(not occurs_on(reminder, date(2024, 2, 28)))
    assume(occurs_on(reminder, date(2024, 3, 31)))
    assume(occurs_on(reminder, date(2024, 4, 30)))

    res = classify(reminder, datetime(2024, 2, 28, 12, 0, tzinfo=UTC))
    assume(res.state == StateEnum.UPCOMING)
    assume(res.next_occurrence_at == datetime(2024, 2, 29, 9, 0, tzinfo=UTC))


def test_monthly_not_before_creation() -> None:
    """
    Test a monthly reminder has no occurrence before the day it was created.
    """
    reminder = make_reminder(
        created_at=datetime(2024, 3, 15, tzinfo=UTC),
        frequency=FrequencyEnum.MONTHLY,
    )
    assume(not occurs_on(reminder, date(2024, 1, 15)))
    assume(not occurs_on(reminder, date(2024, 2, 15)))
    assume(occurs_on(reminder, date(2024, 3, 15)))
    assume(occurs_on(reminder, date(2024, 4, 15)))

    res = classify(reminder, datetime(2024, 2, 15, 9, 0, 10, tzinfo=UTC))
    assume(res.state == StateEnum.UPCOMING)
    assume(res.next_occurrence_at == datetime(2024, 3, 15, 9, 0, tzinfo=UTC))


def test_inactive() -> None:
    """
    Test an inactive reminder is never scheduled.
    """
    res = classify(
        make_reminder(is_active=False),
        datetime(2024, 1, 1, 9, 0, 30, tzinfo=UTC),
    )
    assume(res.state == StateEnum.INACTIVE)
    assume(res.next_occurrence_at is None)
    assume(res.seconds_from_now is None)


def test_as_needed() -> None:
    """
    Test an as-needed reminder is always upcoming, without a forced next occurrence.
    """
    res = classify(
        make_reminder(frequency=FrequencyEnum.AS_NEEDED),
        datetime(2024, 1, 1, 9, 0, 30, tzinfo=UTC),
    )
    assume(res.state == StateEnum.UPCOMING)
    assume(res.next_occurrence_at is None)


def test_taken_and_skipped() -> None:
    """
    Test an action on today's occurrence wins over the due window, and moves the next occurrence to tomorrow.
    """
    now = datetime(2024, 1, 1, 9, 0, 30, tzinfo=UTC)

    taken = classify(
        make_reminder(last_completed_at=datetime(2024, 1, 1, 8, 55, tzinfo=UTC)),
        now,
    )
    assume(taken.state == StateEnum.TAKEN)
    assume(taken.next_occurrence_at == datetime(2024, 1, 2, 9, 0, tzinfo=UTC))

    skipped = classify(
        make_reminder(last_skipped_at=datetime(2024, 1, 1, 9, 0, 10, tzinfo=UTC)),
        now,
    )
    assume(skipped.state == StateEnum.SKIPPED)

    # Taken yesterday does not count for today
    yesterday = classify(
        make_reminder(last_completed_at=datetime(2023, 12, 31, 9, 0, tzinfo=UTC)),
        now,
    )
    assume(yesterday.state == StateEnum.DUE)


def test_timezone() -> None:
    """
    Test the wall-clock time is placed in the timezone of now.
    """
    paris = timezone("Europe/Paris")
    now = paris.localize(datetime(2024, 7, 1, 9, 0, 30))

    res = classify(make_reminder(time_of_day="09:00"), now)

    assume(res.state == StateEnum.DUE)
    assert res.scheduled_at
    assume(res.scheduled_at.astimezone(UTC) == datetime(2024, 7, 1, 7, 0, tzinfo=UTC))


def test_custom_tolerance() -> None:
    """
    Test the tolerance and rollover come from the configuration.
    """
    config = SchedulingModel(due_tolerance_sec=300, overdue_rollover_sec=3600)
    reminder = make_reminder(time_of_day="09:00")

    assume(
        classify(reminder, datetime(2024, 1, 1, 9, 4, tzinfo=UTC), config).state
        == StateEnum.DUE
    )
    assume(
        classify(reminder, datetime(2024, 1, 1, 9, 30, tzinfo=UTC), config).state
        == StateEnum.OVERDUE
    )
    assume(
        classify(reminder, datetime(2024, 1, 1, 11, 0, tzinfo=UTC), config).state
        == StateEnum.UPCOMING
    )


def test_filters() -> None:
    """
    Test the today and upcoming filters.
    """
    now = datetime(2024, 1, 2, 8, 0, tzinfo=UTC)  # Tuesday
    monday_only = make_reminder(days_of_week=[1])
    every_day = make_reminder(time_of_day="09:30")

    assume(not is_today(monday_only, now))
    assume(is_today(every_day, now))
    assume(not is_today(make_reminder(is_active=False), now))

    assume(is_upcoming_within(every_day, now, hours=2))
    assume(not is_upcoming_within(every_day, now, hours=1))
    assume(not is_upcoming_within(monday_only, now, hours=2))
