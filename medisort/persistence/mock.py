import asyncio
from datetime import UTC, datetime, timedelta
from itertools import count

import jwt

from medisort.helpers.config_models.backend import MockModel
from medisort.helpers.logging import logger
from medisort.models.readiness import ReadinessEnum
from medisort.models.reminder import (
    MedicineModel,
    ReminderDraftModel,
    ReminderModel,
    ReminderPatchModel,
    SourceKindEnum,
)
from medisort.models.session import IdentityModel
from medisort.persistence.errors import (
    BackendAuthError,
    BackendError,
    BackendNotFoundError,
)
from medisort.persistence.icredential import ICredentialIssuer
from medisort.persistence.ilinked import ILinkedBackend
from medisort.persistence.istandalone import IStandaloneBackend

_ALGORITHM = "HS256"


class _MockBackend:
    """
    In-memory backend behavior shared by the mocks.

    Set `failure` to make every call raise it, and `latency_sec` to slow calls down.
    """

    calls: int
    failure: BackendError | None
    latency_sec: float

    def __init__(self):
        self.calls = 0
        self.failure = None
        self.latency_sec = 0

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK

    async def _hit(self) -> None:
        self.calls += 1
        if self.latency_sec:
            await asyncio.sleep(self.latency_sec)
        if self.failure:
            raise self.failure


class MockCredentialIssuer(_MockBackend, ICredentialIssuer):
    _config: MockModel

    def __init__(self, config: MockModel):
        super().__init__()
        logger.info("Using mock credential issuer")
        self._config = config

    async def login(self, identity: IdentityModel) -> str:
        await self._hit()
        if not identity.username or not identity.password.get_secret_value():
            raise BackendAuthError("Invalid identity")
        return self.issue(identity.username)

    async def refresh(self, token: str) -> str:
        await self._hit()
        try:
            claims = jwt.decode(
                algorithms=[_ALGORITHM],
                jwt=token,
                key=self._config.secret.get_secret_value(),
                options={"verify_exp": False},
            )
        except jwt.PyJWTError as e:
            raise BackendAuthError("Token not issued here") from e
        return self.issue(claims.get("sub", "unknown"))

    def issue(self, subject: str, ttl_sec: int | None = None) -> str:
        """
        Sign a token for the subject.

        A negative TTL gives an already expired token.
        """
        now = datetime.now(UTC)
        return jwt.encode(
            algorithm=_ALGORITHM,
            key=self._config.secret.get_secret_value(),
            payload={
                "exp": now
                + timedelta(
                    seconds=self._config.token_ttl_sec if ttl_sec is None else ttl_sec
                ),
                "iat": now,
                "sub": subject,
            },
        )


class MockLinkedBackend(_MockBackend, ILinkedBackend):
    _config: MockModel
    _ids: count
    medicines: dict[str, MedicineModel]
    reminders: dict[str, ReminderModel]

    def __init__(self, config: MockModel):
        super().__init__()
        logger.info("Using mock linked backend")
        self._config = config
        self._ids = count(1)
        self.medicines = {}
        self.reminders = {}

    def seed_medicine(self, name: str) -> MedicineModel:
        medicine = MedicineModel(id=str(next(self._ids)), name=name)
        self.medicines[medicine.id] = medicine
        return medicine

    def seed_reminder(self, reminder: ReminderModel) -> ReminderModel:
        self.reminders[reminder.id] = reminder
        return reminder

    async def medicine_list(self, token: str) -> list[MedicineModel]:
        await self._authorize(token)
        return list(self.medicines.values())

    async def reminder_list(
        self,
        token: str,
        medicine_id: str,
    ) -> list[ReminderModel]:
        # Read before the latency, as a server answering with a state already gone
        reminders = [r for r in self.reminders.values() if r.medicine_id == medicine_id]
        await self._authorize(token)
        if medicine_id not in self.medicines:
            raise BackendNotFoundError(f"Medicine {medicine_id} not found")
        return reminders

    async def reminder_create(
        self,
        token: str,
        draft: ReminderDraftModel,
    ) -> ReminderModel:
        await self._authorize(token)
        medicine = self.medicines.get(draft.medicine_id or "")
        if not medicine:
            raise BackendNotFoundError(f"Medicine {draft.medicine_id} not found")
        reminder = ReminderModel.model_validate(
            {
                **draft.model_dump(),
                "id": str(next(self._ids)),
                "label": medicine.name,
                "source_kind": SourceKindEnum.LINKED,
            }
        )
        self.reminders[reminder.id] = reminder
        return reminder

    async def reminder_update(
        self,
        token: str,
        reminder_id: str,
        patch: ReminderPatchModel,
    ) -> ReminderModel:
        await self._authorize(token)
        reminder = self._get(reminder_id)
        updated = patch.apply(reminder)
        self.reminders[reminder_id] = updated
        return updated

    async def reminder_delete(
        self,
        token: str,
        reminder_id: str,
    ) -> None:
        await self._authorize(token)
        self._get(reminder_id)
        del self.reminders[reminder_id]

    async def reminder_toggle(
        self,
        token: str,
        reminder_id: str,
        is_active: bool,
    ) -> ReminderModel:
        return await self.reminder_update(
            patch=ReminderPatchModel(is_active=is_active),
            reminder_id=reminder_id,
            token=token,
        )

    def _get(self, reminder_id: str) -> ReminderModel:
        reminder = self.reminders.get(reminder_id)
        if not reminder:
            raise BackendNotFoundError(f"Reminder {reminder_id} not found")
        return reminder

    async def _authorize(self, token: str) -> None:
        await self._hit()
        try:
            jwt.decode(
                algorithms=[_ALGORITHM],
                jwt=token,
                key=self._config.secret.get_secret_value(),
            )
        except jwt.PyJWTError as e:
            raise BackendAuthError("Token refused") from e


class MockStandaloneBackend(_MockBackend, IStandaloneBackend):
    _ids: count
    reminders: dict[str, ReminderModel]

    def __init__(self):
        super().__init__()
        logger.info("Using mock standalone backend")
        self._ids = count(1)
        self.reminders = {}

    def seed_reminder(self, reminder: ReminderModel) -> ReminderModel:
        self.reminders[reminder.id] = reminder
        return reminder

    async def reminder_list(self) -> list[ReminderModel]:
        reminders = list(self.reminders.values())
        await self._hit()
        return reminders

    async def reminder_create(self, draft: ReminderDraftModel) -> ReminderModel:
        await self._hit()
        reminder = ReminderModel.model_validate(
            {
                **draft.model_dump(exclude={"medicine_id"}),
                "id": str(next(self._ids)),
                "source_kind": SourceKindEnum.STANDALONE,
            }
        )
        self.reminders[reminder.id] = reminder
        return reminder

    async def reminder_update(
        self,
        reminder_id: str,
        patch: ReminderPatchModel,
    ) -> ReminderModel:
        await self._hit()
        reminder = self._get(reminder_id)
        updated = patch.apply(reminder)
        self.reminders[reminder_id] = updated
        return updated

    async def reminder_delete(self, reminder_id: str) -> None:
        await self._hit()
        self._get(reminder_id)
        del self.reminders[reminder_id]

    async def reminder_toggle(
        self,
        reminder_id: str,
        is_active: bool,
    ) -> ReminderModel:
        return await self.reminder_update(
            patch=ReminderPatchModel(is_active=is_active),
            reminder_id=reminder_id,
        )

    def _get(self, reminder_id: str) -> ReminderModel:
        reminder = self.reminders.get(reminder_id)
        if not reminder:
            raise BackendNotFoundError(f"Reminder {reminder_id} not found")
        return reminder
