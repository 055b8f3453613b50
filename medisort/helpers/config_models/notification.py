from pydantic import BaseModel, Field


class NotificationModel(BaseModel):
    dedup_retention_sec: int = Field(default=48 * 60 * 60, ge=60)
    """How long dispatched (reminder, state, minute) triples are remembered."""
    sink_timeout_sec: float = Field(default=5, gt=0)
    """Maximum time given to a sink to accept an event, it is dropped after."""
