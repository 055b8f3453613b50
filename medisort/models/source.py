from enum import Enum

from pydantic import BaseModel

from medisort.models.reminder import ReminderModel, SourceKindEnum


class SourceStatusEnum(str, Enum):
    NETWORK_FAILURE = "network_failure"
    """Backend unreachable, reminders are the offline copy if the source keeps one."""
    OK = "ok"
    """Fresh data from the backend."""
    REFUSED = "refused"
    """Session not usable, never carries reminders."""


class SourceResultModel(BaseModel):
    complete: bool = True
    """False if part of the data could not be fetched, absence then proves nothing."""
    fetch_token: int
    """Sequence number of the fetch, taken before it started."""
    reminders: list[ReminderModel] = []
    source_kind: SourceKindEnum
    status: SourceStatusEnum
