from datetime import UTC, datetime

from pydantic import BaseModel, Field

from medisort.models.reminder import (
    ClassifiedReminderModel,
    ReminderKey,
    SourceKindEnum,
    StateEnum,
)


class NotificationEventModel(BaseModel, frozen=True):
    body: str
    fired_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    label: str
    reminder_id: str
    source_kind: SourceKindEnum
    state: StateEnum

    @property
    def key(self) -> ReminderKey:
        return (self.source_kind, self.reminder_id)


class SnapshotModel(BaseModel):
    """
    Last published state of an evaluation tick.
    """

    badge_count: int = 0
    evaluated_at: datetime | None = None
    reminders: list[ClassifiedReminderModel] = []
