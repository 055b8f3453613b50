from abc import ABC, abstractmethod

from medisort.helpers.monitoring import start_as_current_span
from medisort.models.readiness import ReadinessEnum


class ICache(ABC):
    """
    Local key-value persistence.

    Holds the credential, the status overrides and the offline copies of the reminders.
    """

    @abstractmethod
    @start_as_current_span("cache_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("cache_get")
    async def get(self, key: str) -> bytes | None:
        pass

    @abstractmethod
    @start_as_current_span("cache_set")
    async def set(
        self,
        key: str,
        ttl_sec: int,
        value: str | bytes | None,
    ) -> bool:
        pass

    @abstractmethod
    @start_as_current_span("cache_delete")
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    @start_as_current_span("cache_delete_many")
    async def delete_many(self, keys: list[str]) -> bool:
        """
        Delete all the keys as one operation, either all are gone or none.
        """
