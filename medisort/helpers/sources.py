from collections.abc import Awaitable, Callable
from uuid import uuid4

from aiojobs import Scheduler
from pydantic import TypeAdapter, ValidationError

from medisort.helpers.logging import logger
from medisort.helpers.monitoring import start_as_current_span
from medisort.helpers.session import SessionGuard
from medisort.models.reminder import (
    ReminderDraftModel,
    ReminderModel,
    ReminderPatchModel,
    SourceKindEnum,
)
from medisort.models.session import AccessEnum, OperationModel
from medisort.models.source import SourceResultModel, SourceStatusEnum
from medisort.persistence.errors import (
    BackendAuthError,
    BackendError,
    BackendMalformedError,
    BackendNotFoundError,
)
from medisort.persistence.icache import ICache
from medisort.persistence.ilinked import ILinkedBackend
from medisort.persistence.istandalone import IStandaloneBackend

_reminders_adapter = TypeAdapter(list[ReminderModel])

_LINKED_READ = OperationModel(
    access=AccessEnum.READ,
    source_kind=SourceKindEnum.LINKED,
)


class _OfflineCopy:
    """
    Copy of a source persisted in the local cache.

    Cache failures are logged and degrade to having no offline copy, they never fail a read.
    """

    _cache: ICache
    _cache_key: str
    _cache_ttl_sec: int

    def __init__(self, cache: ICache, cache_key: str, cache_ttl_sec: int):
        self._cache = cache
        self._cache_key = cache_key
        self._cache_ttl_sec = cache_ttl_sec

    @property
    def owned_keys(self) -> list[str]:
        return [self._cache_key]

    async def _load(self) -> list[ReminderModel]:
        try:
            raw = await self._cache.get(self._cache_key)
        except Exception:
            logger.exception("Cannot read offline copy %s", self._cache_key)
            return []
        if not raw:
            return []
        try:
            return _reminders_adapter.validate_json(raw)
        except ValidationError:
            logger.exception("Offline copy %s is malformed, dropping it", self._cache_key)
            await self._drop()
            return []

    async def _save(self, reminders: list[ReminderModel]) -> None:
        try:
            await self._cache.set(
                key=self._cache_key,
                ttl_sec=self._cache_ttl_sec,
                value=_reminders_adapter.dump_json(reminders),
            )
        except Exception:
            logger.exception("Cannot write offline copy %s", self._cache_key)

    async def _drop(self) -> None:
        try:
            await self._cache.delete(self._cache_key)
        except Exception:
            logger.exception("Cannot delete offline copy %s", self._cache_key)


class LinkedReminderSource(_OfflineCopy):
    """
    Reminders attached to the user's medicines.

    Fails closed: without an authorized session, nothing is returned, not even the offline copy.
    """

    _backend: ILinkedBackend
    _begin_fetch: Callable[[], int]
    _guard: SessionGuard
    _reminders: list[ReminderModel] | None

    def __init__(
        self,
        backend: ILinkedBackend,
        begin_fetch: Callable[[], int],
        cache: ICache,
        cache_ttl_sec: int,
        guard: SessionGuard,
        cache_key: str = "medisort_linked_reminders",
    ):
        super().__init__(cache, cache_key, cache_ttl_sec)
        self._backend = backend
        self._begin_fetch = begin_fetch
        self._guard = guard
        self._reminders = None

    async def _offline(self) -> list[ReminderModel]:
        if self._reminders is None:
            self._reminders = await self._load()
        return self._reminders

    @start_as_current_span("linked_source_list")
    async def list(self) -> SourceResultModel:
        """
        Fetch the linked reminders.

        Never raises. A refused session drops the offline copy and gives an empty `REFUSED` result. A fetch that outlived its session is refused too, its data belongs to another user.
        """
        fetch_token = self._begin_fetch()

        auth = await self._guard.authorize(_LINKED_READ)
        generation = self._guard.generation
        token = self._guard.token()
        if not auth.authorized or not token:
            return await self._refused(fetch_token, generation)

        complete = True
        try:
            medicines = await self._backend.medicine_list(token)
        except BackendAuthError:
            logger.warning("Linked backend refused the session")
            return await self._refused(fetch_token, generation)
        except BackendMalformedError as e:
            logger.warning("Some medicines cannot be read, list is incomplete")
            medicines = e.parsed
            complete = False
        except BackendError:
            if self._guard.generation != generation:
                return await self._refused(fetch_token, generation)
            logger.warning("Linked backend unreachable, serving the offline copy")
            return SourceResultModel(
                fetch_token=fetch_token,
                reminders=await self._offline(),
                source_kind=SourceKindEnum.LINKED,
                status=SourceStatusEnum.NETWORK_FAILURE,
            )

        reminders: list[ReminderModel] = []
        for medicine in medicines:
            try:
                fetched = await self._backend.reminder_list(token, medicine.id)
            except BackendAuthError:
                logger.warning("Linked backend refused the session")
                return await self._refused(fetch_token, generation)
            except BackendMalformedError as e:
                logger.warning(
                    "Some reminders of medicine %s cannot be read, list is incomplete",
                    medicine.id,
                )
                fetched = e.parsed
                complete = False
            except BackendError:
                logger.warning(
                    "Cannot list reminders of medicine %s, skipping", medicine.id
                )
                complete = False
                continue
            reminders += [
                reminder.model_copy(update={"label": medicine.name})
                for reminder in fetched
            ]

        # Logged out, and maybe in again, while fetching
        if self._guard.generation != generation:
            logger.info("Session changed during the fetch, discarding it")
            return await self._refused(fetch_token, generation)

        if complete:
            self._reminders = reminders
            await self._save(reminders)
        return SourceResultModel(
            complete=complete,
            fetch_token=fetch_token,
            reminders=reminders,
            source_kind=SourceKindEnum.LINKED,
            status=SourceStatusEnum.OK,
        )

    async def create(self, draft: ReminderDraftModel) -> ReminderModel:
        return await self._backend.reminder_create(self._token(), draft)

    async def update(self, reminder_id: str, patch: ReminderPatchModel) -> ReminderModel:
        return await self._backend.reminder_update(self._token(), reminder_id, patch)

    async def delete(self, reminder_id: str) -> None:
        await self._backend.reminder_delete(self._token(), reminder_id)

    async def toggle(self, reminder_id: str, is_active: bool) -> ReminderModel:
        return await self._backend.reminder_toggle(
            self._token(), reminder_id, is_active
        )

    def invalidate(self) -> None:
        """
        Drop the in-memory copy, the persisted one is deleted by the caller.
        """
        self._reminders = None

    def _token(self) -> str:
        token = self._guard.token()
        if not token:
            raise BackendAuthError("No session")
        return token

    async def _refused(self, fetch_token: int, generation: int) -> SourceResultModel:
        """
        Empty result, dropping the offline copy if it belongs to the session that was refused.

        A session opened meanwhile keeps its own copy.
        """
        if self._guard.generation == generation:
            self._reminders = None
            await self._drop()
        return SourceResultModel(
            fetch_token=fetch_token,
            source_kind=SourceKindEnum.LINKED,
            status=SourceStatusEnum.REFUSED,
        )


class StandaloneReminderSource(_OfflineCopy):
    """
    Reminders usable without a session.

    Writes go to the local store first, then to the backend, and are rolled back if the backend fails.
    """

    _backend: IStandaloneBackend
    _begin_fetch: Callable[[], int]
    _deleted: dict[str, int]
    _last_fetch_token: int
    _loaded: bool
    _pending: dict[str, int]
    _store: dict[str, ReminderModel]
    _versions: dict[str, int]

    def __init__(
        self,
        backend: IStandaloneBackend,
        begin_fetch: Callable[[], int],
        cache: ICache,
        cache_ttl_sec: int,
        cache_key: str = "medisort_standalone_reminders",
    ):
        super().__init__(cache, cache_key, cache_ttl_sec)
        self._backend = backend
        self._begin_fetch = begin_fetch
        self._deleted = {}
        self._last_fetch_token = 0
        self._loaded = False
        self._pending = {}
        self._store = {}
        self._versions = {}

    @property
    def reminders(self) -> list[ReminderModel]:
        return list(self._store.values())

    def get(self, reminder_id: str) -> ReminderModel | None:
        return self._store.get(reminder_id)

    @start_as_current_span("standalone_source_list")
    async def list(self) -> SourceResultModel:
        """
        Fetch the standalone reminders, falling back to the local store.

        Never raises. Reminders with a write in flight keep their local version, and reminders deleted after the fetch started stay deleted.
        """
        fetch_token = self._begin_fetch()
        self._last_fetch_token = fetch_token
        complete = True
        try:
            fetched = await self._backend.reminder_list()
        except BackendMalformedError as e:
            logger.warning("Some standalone reminders cannot be read, list is incomplete")
            await self._ensure_loaded()
            # Unreadable records may be known locally, keep them
            fetched = [*self._store.values(), *e.parsed]
            complete = False
        except BackendError:
            logger.warning("Standalone backend unreachable, serving the local store")
            await self._ensure_loaded()
            return SourceResultModel(
                fetch_token=fetch_token,
                reminders=self.reminders,
                source_kind=SourceKindEnum.STANDALONE,
                status=SourceStatusEnum.NETWORK_FAILURE,
            )

        store = {reminder.id: reminder for reminder in fetched}
        for reminder_id, deleted_at in list(self._deleted.items()):
            if deleted_at >= fetch_token:
                store.pop(reminder_id, None)
            elif complete:
                # Fetch started after the deletion, the backend is authoritative
                del self._deleted[reminder_id]
        for reminder_id in self._pending:
            local = self._store.get(reminder_id)
            if local:
                store[reminder_id] = local
            else:
                store.pop(reminder_id, None)
        self._store = store
        self._loaded = True
        await self._save(self.reminders)

        return SourceResultModel(
            complete=complete,
            fetch_token=fetch_token,
            reminders=self.reminders,
            source_kind=SourceKindEnum.STANDALONE,
            status=SourceStatusEnum.OK,
        )

    async def create(
        self,
        draft: ReminderDraftModel,
        scheduler: Scheduler | None = None,
    ) -> ReminderModel:
        """
        Create a reminder, visible locally under a temporary identifier until the backend answers.
        """
        await self._ensure_loaded()
        local = ReminderModel.model_validate(
            {
                **draft.model_dump(exclude={"medicine_id"}),
                "id": f"local-{uuid4()}",
                "source_kind": SourceKindEnum.STANDALONE,
            }
        )
        self._store[local.id] = local
        self._begin(local.id)
        try:
            created = await self._backend.reminder_create(draft)
            self._store[created.id] = created
            return created
        finally:
            self._store.pop(local.id, None)
            self._end(local.id)
            await self._save(self.reminders)
            await self._reconcile(scheduler)

    async def update(
        self,
        reminder_id: str,
        patch: ReminderPatchModel,
        scheduler: Scheduler | None = None,
    ) -> ReminderModel:
        await self._ensure_loaded()
        previous = self._store.get(reminder_id)
        return await self._apply(
            call=self._backend.reminder_update(reminder_id, patch),
            optimistic=patch.apply(previous) if previous else None,
            reminder_id=reminder_id,
            scheduler=scheduler,
        )

    async def toggle(
        self,
        reminder_id: str,
        is_active: bool,
        scheduler: Scheduler | None = None,
    ) -> ReminderModel:
        await self._ensure_loaded()
        previous = self._store.get(reminder_id)
        return await self._apply(
            call=self._backend.reminder_toggle(reminder_id, is_active),
            optimistic=previous.model_copy(update={"is_active": is_active})
            if previous
            else None,
            reminder_id=reminder_id,
            scheduler=scheduler,
        )

    async def delete(
        self,
        reminder_id: str,
        scheduler: Scheduler | None = None,
    ) -> None:
        """
        Delete a reminder.

        Fetches started before the deletion completed cannot bring it back.
        """
        await self._ensure_loaded()
        try:
            await self._apply(
                call=self._backend.reminder_delete(reminder_id),
                optimistic=None,
                reminder_id=reminder_id,
                scheduler=scheduler,
            )
        except BackendNotFoundError:
            self._deleted[reminder_id] = self._last_fetch_token
            raise
        self._deleted[reminder_id] = self._last_fetch_token

    def invalidate(self) -> None:
        """
        Drop the local store, it is fetched again from the backend on next list.
        """
        self._deleted.clear()
        self._loaded = False
        self._pending.clear()
        self._store = {}
        self._versions.clear()

    async def _apply(
        self,
        call: Awaitable,
        optimistic: ReminderModel | None,
        reminder_id: str,
        scheduler: Scheduler | None,
    ):
        """
        Run a backend write over an optimistic local change.

        Only the latest write on a reminder applies its outcome, older ones neither commit nor roll back.
        """
        previous = self._store.get(reminder_id)
        self._set_local(reminder_id, optimistic)
        version = self._begin(reminder_id)
        try:
            res = await call
        except BackendNotFoundError:
            if self._versions.get(reminder_id) == version:
                self._set_local(reminder_id, None)
            raise
        except BackendError:
            if self._versions.get(reminder_id) == version:
                self._set_local(reminder_id, previous)
            raise
        finally:
            self._end(reminder_id)
        if self._versions.get(reminder_id) == version:
            self._set_local(reminder_id, res)
            await self._save(self.reminders)
        await self._reconcile(scheduler)
        return res

    def _begin(self, reminder_id: str) -> int:
        self._pending[reminder_id] = self._pending.get(reminder_id, 0) + 1
        version = self._versions.get(reminder_id, 0) + 1
        self._versions[reminder_id] = version
        return version

    def _end(self, reminder_id: str) -> None:
        count = self._pending.get(reminder_id, 0) - 1
        if count > 0:
            self._pending[reminder_id] = count
        else:
            self._pending.pop(reminder_id, None)

    def _set_local(self, reminder_id: str, reminder: ReminderModel | None) -> None:
        if reminder:
            self._store[reminder_id] = reminder
        else:
            self._store.pop(reminder_id, None)

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._store = {reminder.id: reminder for reminder in await self._load()}
        self._loaded = True

    async def _reconcile(self, scheduler: Scheduler | None) -> None:
        if not scheduler:
            return
        await scheduler.spawn(self.list())
