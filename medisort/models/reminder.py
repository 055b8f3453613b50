from datetime import UTC, datetime, time
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator


class SourceKindEnum(str, Enum):
    LINKED = "linked"
    """Reminder attached to a medicine, requires a valid session."""
    STANDALONE = "standalone"
    """Freestanding reminder, usable without a session."""


class FrequencyEnum(str, Enum):
    AS_NEEDED = "as-needed"
    """Never scheduled, only logged manually."""
    DAILY = "daily"
    """Every day, or every listed weekday."""
    MONTHLY = "monthly"
    """Same day of the month as the creation date."""
    WEEKLY = "weekly"
    """Every listed weekday, or the creation weekday."""


class StateEnum(str, Enum):
    DUE = "due"
    """Scheduled instant reached, within the tolerance window."""
    INACTIVE = "inactive"
    """Reminder is switched off, never scheduled."""
    OVERDUE = "overdue"
    """Scheduled instant passed without action, same day."""
    SKIPPED = "skipped"
    """Today's occurrence was explicitly skipped."""
    TAKEN = "taken"
    """Today's occurrence was completed."""
    UPCOMING = "upcoming"
    """Next occurrence is in the future."""


class CategoryEnum(str, Enum):
    """
    Standalone reminder categories.

    Used to pick the notification message.
    """

    APPOINTMENT = "appointment"
    EXERCISE = "exercise"
    HEALTH = "health"
    MEDICATION = "medication"
    NUTRITION = "nutrition"
    OTHER = "other"
    PERSONAL = "personal"


DayOfWeek = Annotated[int, Field(ge=0, le=6)]  # 0 is Sunday
ReminderKey = tuple[SourceKindEnum, str]


def _as_utc(value: datetime | None) -> datetime | None:
    if value and not value.tzinfo:
        return value.replace(tzinfo=UTC)
    return value


def _as_time_of_day(value: Any) -> Any:
    # Accept "HH:MM" and "HH:MM:SS", keep the minute resolution only
    if isinstance(value, str):
        value = time.fromisoformat(value.strip())
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    return value


class ReminderModel(BaseModel):
    # Immutable fields
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), frozen=True)
    id: str = Field(frozen=True)
    source_kind: SourceKindEnum = Field(frozen=True)
    # Editable fields
    category: CategoryEnum = CategoryEnum.OTHER
    days_of_week: set[DayOfWeek] = set()
    frequency: FrequencyEnum = FrequencyEnum.DAILY
    is_active: bool = True
    label: str
    last_completed_at: datetime | None = None
    last_skipped_at: datetime | None = None
    medicine_id: str | None = None  # Only for linked reminders
    notes: str | None = None
    time_of_day: time
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("id", "medicine_id", mode="before")
    @classmethod
    def _validate_id(cls, value: Any) -> Any:
        """
        Backends use numeric identifiers, keep them as strings.
        """
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("time_of_day", mode="before")
    @classmethod
    def _validate_time_of_day(cls, value: Any) -> Any:
        return _as_time_of_day(value)

    @field_validator(
        "created_at",
        "last_completed_at",
        "last_skipped_at",
        "updated_at",
    )
    @classmethod
    def _validate_datetime(cls, value: datetime | None) -> datetime | None:
        """
        Naive timestamps from storage are considered UTC.
        """
        return _as_utc(value)

    @property
    def key(self) -> ReminderKey:
        """
        Unique key across sources.

        Identifiers are only unique within a source kind, so the kind is part of the key.
        """
        return (self.source_kind, self.id)


class ReminderDraftModel(BaseModel):
    """
    User input to create a reminder.

    Validated before any write reaches a backend.
    """

    category: CategoryEnum = CategoryEnum.OTHER
    days_of_week: set[DayOfWeek] = set()
    frequency: FrequencyEnum = FrequencyEnum.DAILY
    is_active: bool = True
    label: str = Field(min_length=1)
    medicine_id: str | None = None
    notes: str | None = None
    time_of_day: time

    @field_validator("label", "notes", mode="before")
    @classmethod
    def _validate_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("medicine_id", mode="before")
    @classmethod
    def _validate_medicine_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("time_of_day", mode="before")
    @classmethod
    def _validate_time_of_day(cls, value: Any) -> Any:
        return _as_time_of_day(value)


class ReminderPatchModel(BaseModel):
    """
    Partial update of a reminder, unset fields are left untouched.
    """

    category: CategoryEnum | None = None
    days_of_week: set[DayOfWeek] | None = None
    frequency: FrequencyEnum | None = None
    is_active: bool | None = None
    label: str | None = Field(default=None, min_length=1)
    last_completed_at: datetime | None = None
    last_skipped_at: datetime | None = None
    notes: str | None = None
    time_of_day: time | None = None

    @field_validator("time_of_day", mode="before")
    @classmethod
    def _validate_time_of_day(cls, value: Any) -> Any:
        return _as_time_of_day(value)

    @field_validator("last_completed_at", "last_skipped_at")
    @classmethod
    def _validate_datetime(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def apply(self, reminder: ReminderModel) -> ReminderModel:
        """
        Return a copy of the reminder with the patch applied.
        """
        return reminder.model_copy(
            update={
                **self.model_dump(exclude_unset=True),
                "updated_at": datetime.now(UTC),
            }
        )


class MedicineModel(BaseModel):
    id: str
    name: str

    @field_validator("id", mode="before")
    @classmethod
    def _validate_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class ClassificationModel(BaseModel, frozen=True):
    next_occurrence_at: datetime | None = None
    scheduled_at: datetime | None = None
    """Occurrence the state refers to, the pending one when due or overdue."""
    seconds_from_now: int | None = None
    state: StateEnum


class ClassifiedReminderModel(BaseModel):
    classification: ClassificationModel
    reminder: ReminderModel


class ReminderStatsModel(BaseModel):
    active: int
    overdue: int
    today: int
    total: int
    upcoming: int


class ReminderExportModel(BaseModel):
    """
    Portable backup of the standalone reminders.
    """

    exported_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reminders: list[ReminderModel] = []
    version: str


class ReminderImportModel(BaseModel):
    errors: list[str] = []
    imported: int = 0
