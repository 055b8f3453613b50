from abc import ABC, abstractmethod

from medisort.helpers.monitoring import start_as_current_span
from medisort.models.readiness import ReadinessEnum
from medisort.models.reminder import (
    MedicineModel,
    ReminderDraftModel,
    ReminderModel,
    ReminderPatchModel,
)


class ILinkedBackend(ABC):
    """
    Backend of the reminders attached to a medicine.

    All operations require a valid token and are idempotent by identifier. Lists with unreadable records raise `BackendMalformedError` carrying the readable ones.
    """

    @abstractmethod
    @start_as_current_span("linked_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("linked_medicine_list")
    async def medicine_list(self, token: str) -> list[MedicineModel]:
        pass

    @abstractmethod
    @start_as_current_span("linked_reminder_list")
    async def reminder_list(
        self,
        token: str,
        medicine_id: str,
    ) -> list[ReminderModel]:
        pass

    @abstractmethod
    @start_as_current_span("linked_reminder_create")
    async def reminder_create(
        self,
        token: str,
        draft: ReminderDraftModel,
    ) -> ReminderModel:
        pass

    @abstractmethod
    @start_as_current_span("linked_reminder_update")
    async def reminder_update(
        self,
        token: str,
        reminder_id: str,
        patch: ReminderPatchModel,
    ) -> ReminderModel:
        pass

    @abstractmethod
    @start_as_current_span("linked_reminder_delete")
    async def reminder_delete(
        self,
        token: str,
        reminder_id: str,
    ) -> None:
        pass

    @abstractmethod
    @start_as_current_span("linked_reminder_toggle")
    async def reminder_toggle(
        self,
        token: str,
        reminder_id: str,
        is_active: bool,
    ) -> ReminderModel:
        pass
