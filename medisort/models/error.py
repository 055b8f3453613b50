from enum import Enum

from pydantic import BaseModel

from medisort.models.reminder import ReminderModel


class ErrorKindEnum(str, Enum):
    NETWORK_FAILURE = "network_failure"
    """Transient backend failure, reads fall back to the last known good data."""
    NOT_FOUND = "not_found"
    """Target already removed, treated as a success for writes."""
    SESSION_EXPIRED = "session_expired"
    """Credential present but not usable anymore."""
    UNAUTHENTICATED = "unauthenticated"
    """No credential present."""
    VALIDATION_FAILURE = "validation_failure"
    """Malformed reminder input, rejected before any write."""


class ErrorInnerModel(BaseModel):
    message: str
    details: list[str]


class ErrorModel(BaseModel):
    error: ErrorInnerModel


class WriteResultModel(BaseModel):
    """
    Outcome of a write operation.

    `error` is empty on success. `reminder` is the reminder as known after the write, if any.
    """

    details: list[str] = []
    error: ErrorKindEnum | None = None
    reminder: ReminderModel | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
