from datetime import tzinfo
from functools import cached_property

from pydantic import BaseModel, Field, field_validator
from pytz import UnknownTimeZoneError, timezone


class SchedulingModel(BaseModel):
    due_tolerance_sec: int = Field(default=60, ge=0)
    """Seconds after the scheduled instant during which a reminder is due."""
    overdue_rollover_sec: int = Field(default=24 * 60 * 60, gt=0)
    """Seconds after which an unanswered occurrence stops being overdue."""
    tick_interval_sec: int = Field(default=30, ge=1)
    """Interval between two evaluation ticks."""
    timezone: str = "UTC"
    """Timezone used to place wall-clock reminder times, IANA name."""
    upcoming_window_hour: int = Field(default=2, ge=0)
    """Look-ahead used for the upcoming reminders statistic."""

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            timezone(value)
        except UnknownTimeZoneError as e:
            raise ValueError(f'Unknown timezone "{value}"') from e
        return value

    @cached_property
    def tz(self) -> tzinfo:
        return timezone(self.timezone)
