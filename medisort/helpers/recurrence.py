"""
Classification of reminders into their temporal state.

Everything here is pure: same reminder and same `now` always give the same result.
"""

from datetime import UTC, date, datetime, time, timedelta, tzinfo

from dateutil.relativedelta import relativedelta

from medisort.helpers.config_models.scheduling import SchedulingModel
from medisort.models.reminder import (
    ClassificationModel,
    FrequencyEnum,
    ReminderModel,
    StateEnum,
)

_DEFAULT_CONFIG = SchedulingModel()
# Monthly reminders are the sparsest, one occurrence every month at most
_SEARCH_DAYS = 62


def weekday(day: date) -> int:
    """
    Day of week with Sunday as 0, as stored on the reminders.
    """
    return (day.weekday() + 1) % 7


def occurs_on(
    reminder: ReminderModel,
    day: date,
    tz: tzinfo | None = None,
) -> bool:
    """
    Check if the reminder has an occurrence on the given local day.

    The timezone is used to place the creation date for weekly and monthly reminders, UTC by default.
    """
    if reminder.frequency == FrequencyEnum.AS_NEEDED:
        return False

    if reminder.frequency == FrequencyEnum.DAILY:
        return not reminder.days_of_week or weekday(day) in reminder.days_of_week

    created = reminder.created_at.astimezone(tz or UTC).date()

    if reminder.frequency == FrequencyEnum.WEEKLY:
        days = reminder.days_of_week or {weekday(created)}
        return weekday(day) in days

    # Monthly, same day as the creation, clamped to the end of shorter months
    if day < created:
        return False
    months = (day.year - created.year) * 12 + day.month - created.month
    return created + relativedelta(months=months) == day


def classify(
    reminder: ReminderModel,
    now: datetime,
    config: SchedulingModel | None = None,
) -> ClassificationModel:
    """
    Compute the state of a reminder at `now`.

    Wall-clock times are placed in the timezone of `now`, a naive `now` is considered UTC. Sub-second precision is ignored.
    """
    config = config or _DEFAULT_CONFIG
    if not now.tzinfo:
        now = now.replace(tzinfo=UTC)
    now = now.replace(microsecond=0)

    if not reminder.is_active:
        return ClassificationModel(state=StateEnum.INACTIVE)

    # Only logged manually, nothing to schedule
    if reminder.frequency == FrequencyEnum.AS_NEEDED:
        return ClassificationModel(state=StateEnum.UPCOMING)

    tz = now.tzinfo
    today = now.date()
    state = StateEnum.UPCOMING
    scheduled_at: datetime | None = None
    search_after = now

    if occurs_on(reminder, today, tz):
        scheduled_at = _at(today, reminder.time_of_day, tz)
        elapsed = (now - scheduled_at).total_seconds()

        if _same_day(reminder.last_completed_at, today, tz):
            state = StateEnum.TAKEN
            search_after = max(now, scheduled_at)
        elif _same_day(reminder.last_skipped_at, today, tz):
            state = StateEnum.SKIPPED
            search_after = max(now, scheduled_at)
        elif 0 <= elapsed <= config.due_tolerance_sec:
            state = StateEnum.DUE
        elif config.due_tolerance_sec < elapsed < config.overdue_rollover_sec:
            state = StateEnum.OVERDUE

    next_occurrence_at = _next_occurrence(reminder, search_after, tz)
    if state == StateEnum.UPCOMING:
        scheduled_at = next_occurrence_at

    return ClassificationModel(
        next_occurrence_at=next_occurrence_at,
        scheduled_at=scheduled_at,
        seconds_from_now=int((next_occurrence_at - now).total_seconds())
        if next_occurrence_at
        else None,
        state=state,
    )


def is_today(reminder: ReminderModel, now: datetime) -> bool:
    """
    Check if an active reminder has an occurrence on the local day of `now`.
    """
    if not now.tzinfo:
        now = now.replace(tzinfo=UTC)
    return reminder.is_active and occurs_on(reminder, now.date(), now.tzinfo)


def is_upcoming_within(
    reminder: ReminderModel,
    now: datetime,
    hours: int,
    config: SchedulingModel | None = None,
) -> bool:
    """
    Check if the reminder is upcoming and its next occurrence is within the given hours.
    """
    classification = classify(reminder, now, config)
    return (
        classification.state == StateEnum.UPCOMING
        and classification.seconds_from_now is not None
        and classification.seconds_from_now <= hours * 60 * 60
    )


def _at(day: date, time_of_day: time, tz: tzinfo | None) -> datetime:
    naive = datetime.combine(day, time_of_day)
    # pytz zones need localize to pick the right offset
    localize = getattr(tz, "localize", None)
    if localize:
        return localize(naive)
    return naive.replace(tzinfo=tz)


def _same_day(value: datetime | None, day: date, tz: tzinfo | None) -> bool:
    if not value:
        return False
    return value.astimezone(tz).date() == day


def _next_occurrence(
    reminder: ReminderModel,
    after: datetime,
    tz: tzinfo | None,
) -> datetime | None:
    start = after.date()
    for offset in range(_SEARCH_DAYS + 1):
        day = start + timedelta(days=offset)
        if not occurs_on(reminder, day, tz):
            continue
        candidate = _at(day, reminder.time_of_day, tz)
        if candidate > after:
            return candidate
    return None
