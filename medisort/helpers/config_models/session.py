from pydantic import BaseModel, Field, SecretStr


class SessionModel(BaseModel):
    algorithms: list[str] = ["HS256", "RS256"]
    cache_key: str = "medisort_token"
    leeway_sec: int = Field(default=0, ge=0)
    """Clock skew tolerated when comparing the expiry claim."""
    refresh_buffer_sec: int = Field(default=5 * 60, ge=0)
    """Refresh proactively when the credential expires in less than this."""
    refresh_timeout_sec: float = Field(default=10, gt=0)
    """A refresh taking longer is considered failed."""
    verification_key: SecretStr | None = None
    """Key to verify the token signature. If not set, only the claims are decoded."""
