from enum import Enum

from pydantic import BaseModel


class ReadinessEnum(str, Enum):
    FAIL = "fail"
    """The dependency is not ready."""
    OK = "ok"
    """The dependency is ready."""


class ReadinessCheckModel(BaseModel):
    id: str
    status: ReadinessEnum


class ReadinessModel(BaseModel):
    checks: list[ReadinessCheckModel]
    status: ReadinessEnum

    @classmethod
    def from_checks(cls, checks: dict[str, ReadinessEnum]) -> "ReadinessModel":
        """
        Build the readiness report, failing if any check failed.
        """
        return cls(
            checks=[
                ReadinessCheckModel(id=check_id, status=status)
                for check_id, status in checks.items()
            ],
            status=ReadinessEnum.OK
            if all(status == ReadinessEnum.OK for status in checks.values())
            else ReadinessEnum.FAIL,
        )
