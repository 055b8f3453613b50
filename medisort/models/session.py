from datetime import datetime
from enum import Enum

from pydantic import BaseModel, SecretStr

from medisort.models.reminder import SourceKindEnum


class SessionStateEnum(str, Enum):
    EXPIRED = "expired"
    """Credential decoded, but its expiry is in the past."""
    NO_CREDENTIAL = "no_credential"
    """No credential stored, or it cannot be decoded."""
    VALID = "valid"
    """Credential decoded and not expired."""


class AccessEnum(str, Enum):
    READ = "read"
    WRITE = "write"


class AuthorizationEnum(str, Enum):
    AUTHORIZED = "authorized"
    NEEDS_REFRESH = "needs_refresh"
    REFUSED = "refused"


class RefusalReasonEnum(str, Enum):
    SESSION_EXPIRED = "session_expired"
    """Session lapsed and could not be refreshed, user must log in again."""
    UNAUTHENTICATED = "unauthenticated"
    """No session, user must log in."""


class OperationModel(BaseModel, frozen=True):
    access: AccessEnum
    source_kind: SourceKindEnum


class CredentialModel(BaseModel, frozen=True):
    """
    Session credential.

    Dates are always decoded from the token itself, never from local bookkeeping.
    """

    expires_at: datetime
    issued_at: datetime | None = None
    subject: str | None = None
    token: SecretStr


class AuthorizationModel(BaseModel, frozen=True):
    message: str | None = None
    reason: RefusalReasonEnum | None = None
    status: AuthorizationEnum

    @property
    def authorized(self) -> bool:
        return self.status == AuthorizationEnum.AUTHORIZED


class SessionStatusModel(BaseModel):
    expires_at: datetime | None = None
    seconds_remaining: int = 0
    state: SessionStateEnum
    subject: str | None = None


class IdentityModel(BaseModel):
    password: SecretStr
    username: str
