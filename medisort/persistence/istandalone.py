from abc import ABC, abstractmethod

from medisort.helpers.monitoring import start_as_current_span
from medisort.models.readiness import ReadinessEnum
from medisort.models.reminder import (
    ReminderDraftModel,
    ReminderModel,
    ReminderPatchModel,
)


class IStandaloneBackend(ABC):
    """
    Backend of the freestanding reminders, no credential needed.

    Lists with unreadable records raise `BackendMalformedError` carrying the readable ones.
    """

    @abstractmethod
    @start_as_current_span("standalone_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("standalone_reminder_list")
    async def reminder_list(self) -> list[ReminderModel]:
        pass

    @abstractmethod
    @start_as_current_span("standalone_reminder_create")
    async def reminder_create(self, draft: ReminderDraftModel) -> ReminderModel:
        pass

    @abstractmethod
    @start_as_current_span("standalone_reminder_update")
    async def reminder_update(
        self,
        reminder_id: str,
        patch: ReminderPatchModel,
    ) -> ReminderModel:
        pass

    @abstractmethod
    @start_as_current_span("standalone_reminder_delete")
    async def reminder_delete(self, reminder_id: str) -> None:
        pass

    @abstractmethod
    @start_as_current_span("standalone_reminder_toggle")
    async def reminder_toggle(
        self,
        reminder_id: str,
        is_active: bool,
    ) -> ReminderModel:
        pass
