import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from aiojobs import Scheduler
from pydantic import TypeAdapter, ValidationError
from pydantic_core import from_json

from medisort.helpers.config_models.root import RootModel
from medisort.helpers.dispatcher import NotificationDispatcher, count_badge
from medisort.helpers.logging import logger
from medisort.helpers.merge import MergeEngine
from medisort.helpers.monitoring import (
    SpanAttributeEnum,
    gauge_set,
    start_as_current_span,
    tick_latency,
)
from medisort.helpers.recurrence import classify, is_today, is_upcoming_within
from medisort.helpers.session import SessionGuard
from medisort.helpers.sources import LinkedReminderSource, StandaloneReminderSource
from medisort.models.error import ErrorKindEnum, WriteResultModel
from medisort.models.notification import SnapshotModel
from medisort.models.readiness import ReadinessModel
from medisort.models.reminder import (
    ClassifiedReminderModel,
    ReminderDraftModel,
    ReminderExportModel,
    ReminderImportModel,
    ReminderKey,
    ReminderModel,
    ReminderPatchModel,
    ReminderStatsModel,
    SourceKindEnum,
    StateEnum,
)
from medisort.models.session import (
    AccessEnum,
    AuthorizationModel,
    IdentityModel,
    OperationModel,
    RefusalReasonEnum,
    SessionStatusModel,
)
from medisort.models.source import SourceStatusEnum
from medisort.persistence.errors import (
    BackendAuthError,
    BackendError,
    BackendMalformedError,
    BackendNetworkError,
    BackendNotFoundError,
)
from medisort.persistence.icache import ICache
from medisort.persistence.icredential import ICredentialIssuer
from medisort.persistence.ilinked import ILinkedBackend
from medisort.persistence.istandalone import IStandaloneBackend

_import_adapter = TypeAdapter(list[dict[str, Any]])

_LINKED_WRITE = OperationModel(
    access=AccessEnum.WRITE,
    source_kind=SourceKindEnum.LINKED,
)


class ReminderEngine:
    """
    Orchestrates the evaluation ticks and the writes.

    A tick fetches both sources, merges them, classifies every reminder and dispatches the notifications, strictly in this order.
    """

    dispatcher: NotificationDispatcher
    guard: SessionGuard
    linked: LinkedReminderSource
    merge: MergeEngine
    standalone: StandaloneReminderSource

    _cache: ICache
    _config: RootModel
    _issuer: ICredentialIssuer
    _linked_backend: ILinkedBackend
    _pending: dict[ReminderKey, int]
    _published_tick: int
    _snapshot: SnapshotModel
    _standalone_backend: IStandaloneBackend
    _tick_seq: int
    _versions: dict[ReminderKey, int]

    def __init__(
        self,
        cache: ICache,
        config: RootModel,
        issuer: ICredentialIssuer,
        linked_backend: ILinkedBackend,
        standalone_backend: IStandaloneBackend,
    ):
        self._cache = cache
        self._config = config
        self._issuer = issuer
        self._linked_backend = linked_backend
        self._pending = {}
        self._published_tick = 0
        self._snapshot = SnapshotModel()
        self._standalone_backend = standalone_backend
        self._tick_seq = 0
        self._versions = {}

        self.dispatcher = NotificationDispatcher(config.notification)
        self.guard = SessionGuard(
            cache=cache,
            config=config.session,
            issuer=issuer,
        )
        self.merge = MergeEngine(
            cache=cache,
            cache_ttl_sec=config.cache.ttl_sec,
        )
        self.linked = LinkedReminderSource(
            backend=linked_backend,
            begin_fetch=self.merge.begin_fetch,
            cache=cache,
            cache_ttl_sec=config.cache.ttl_sec,
            guard=self.guard,
        )
        self.standalone = StandaloneReminderSource(
            backend=standalone_backend,
            begin_fetch=self.merge.begin_fetch,
            cache=cache,
            cache_ttl_sec=config.cache.ttl_sec,
        )

    @classmethod
    def from_config(cls, config: RootModel) -> "ReminderEngine":
        return cls(
            cache=config.cache.instance,
            config=config,
            issuer=config.backend.credential_issuer,
            linked_backend=config.backend.linked,
            standalone_backend=config.backend.standalone,
        )

    async def start(self) -> None:
        """
        Restore the state persisted by a previous run.
        """
        await self.guard.restore()
        await self.merge.load()

    def snapshot(self) -> SnapshotModel:
        """
        Last published tick.
        """
        return self._snapshot

    def now(self) -> datetime:
        return datetime.now(self._config.scheduling.tz)

    @start_as_current_span("engine_tick")
    async def tick(self, now: datetime | None = None) -> SnapshotModel:
        """
        Run an evaluation tick.

        Ticks may overlap. A tick finishing after a more recent one is discarded, so a snapshot never goes back in time.
        """
        self._tick_seq += 1
        tick_id = self._tick_seq
        SpanAttributeEnum.TICK_ID.attribute(tick_id)
        start = time.monotonic()

        await self.guard.refresh_if_expiring()
        linked, standalone = await asyncio.gather(
            self.linked.list(),
            self.standalone.list(),
        )

        for result in (linked, standalone):
            if result.status == SourceStatusEnum.OK and result.complete:
                await self.merge.confirm_fetch(
                    fetch_token=result.fetch_token,
                    kind=result.source_kind,
                    reminders=result.reminders,
                )

        if tick_id < self._published_tick:
            logger.info("Tick %s outdated, discarding", tick_id)
            return self._snapshot

        now = now or self.now()
        previous = {item.reminder.key: item for item in self._snapshot.reminders}
        classified: list[ClassifiedReminderModel] = []
        for reminder in self.merge.merge(linked, standalone):
            # Will be classified once the write settles, until then the last state is kept
            if reminder.key in self._pending:
                if reminder.key in previous:
                    classified.append(previous[reminder.key])
                continue
            try:
                classification = classify(reminder, now, self._config.scheduling)
            except (ArithmeticError, TypeError, ValueError):
                logger.exception("Cannot classify reminder %s, dropping it", reminder.id)
                continue
            classified.append(
                ClassifiedReminderModel(
                    classification=classification,
                    reminder=reminder,
                )
            )

        self._published_tick = tick_id
        self._snapshot = SnapshotModel(
            badge_count=count_badge(classified),
            evaluated_at=now,
            reminders=classified,
        )
        await self.dispatcher.dispatch(classified, now)

        gauge_set(tick_latency, time.monotonic() - start)
        logger.debug("Tick %s evaluated %s reminders", tick_id, len(classified))
        return self._snapshot

    async def run(self, interval_sec: float | None = None) -> None:
        """
        Run the evaluation ticks forever.
        """
        interval_sec = interval_sec or self._config.scheduling.tick_interval_sec
        logger.info("Evaluating reminders every %ss", interval_sec)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Tick failed, retrying at next interval")
            await asyncio.sleep(interval_sec)

    async def login(self, identity: IdentityModel) -> SessionStatusModel:
        """
        Open a session.

        Standalone reminders are not affected. Raises `BackendAuthError` or `BackendNetworkError` on failure.
        """
        return await self.guard.login(identity)

    @start_as_current_span("engine_logout")
    async def logout(self) -> None:
        """
        Close the session and purge every session dependent data.

        In-memory state is cleared without yielding, then every owned key is deleted in a single call.
        """
        self.guard.forget()
        self.merge.purge_all()
        self.linked.invalidate()
        self.standalone.invalidate()
        self.dispatcher.reset()
        self._snapshot = SnapshotModel()
        # Ticks in flight carry data from the closed session
        self._published_tick = self._tick_seq + 1
        await self._cache.delete_many(
            [
                *self.guard.owned_keys,
                *self.merge.owned_keys,
                *self.linked.owned_keys,
                *self.standalone.owned_keys,
            ]
        )
        logger.info("Logged out, local data purged")

    async def readiness(self) -> ReadinessModel:
        return ReadinessModel.from_checks(
            {
                "cache": await self._cache.readiness(),
                "credential_issuer": await self._issuer.readiness(),
                "linked_backend": await self._linked_backend.readiness(),
                "standalone_backend": await self._standalone_backend.readiness(),
            }
        )

    @start_as_current_span("engine_create")
    async def create(
        self,
        kind: SourceKindEnum,
        draft: ReminderDraftModel | dict[str, Any],
        scheduler: Scheduler | None = None,
    ) -> WriteResultModel:
        try:
            draft = ReminderDraftModel.model_validate(draft)
        except ValidationError as e:
            return _validation_failure(e)
        SpanAttributeEnum.REMINDER_KIND.attribute(kind.value)

        if kind == SourceKindEnum.STANDALONE:
            try:
                reminder = await self.standalone.create(draft, scheduler)
            except BackendError as e:
                return _backend_failure(e)
            return WriteResultModel(reminder=reminder)

        if not draft.medicine_id:
            return WriteResultModel(
                details=["A medicine is required for a medicine reminder."],
                error=ErrorKindEnum.VALIDATION_FAILURE,
            )
        auth = await self.guard.authorize(_LINKED_WRITE)
        if not auth.authorized:
            return _refused(auth)
        try:
            reminder = await self.linked.create(draft)
        except BackendError as e:
            return _backend_failure(e)
        return WriteResultModel(reminder=reminder)

    @start_as_current_span("engine_update")
    async def update(
        self,
        kind: SourceKindEnum,
        reminder_id: str,
        patch: ReminderPatchModel | dict[str, Any],
        scheduler: Scheduler | None = None,
    ) -> WriteResultModel:
        try:
            patch = ReminderPatchModel.model_validate(patch)
        except ValidationError as e:
            return _validation_failure(e)
        return await self._write(
            key=(kind, reminder_id),
            linked=lambda: self.linked.update(reminder_id, patch),
            standalone=lambda: self.standalone.update(reminder_id, patch, scheduler),
        )

    async def mark_taken(
        self,
        kind: SourceKindEnum,
        reminder_id: str,
        at: datetime | None = None,
        scheduler: Scheduler | None = None,
    ) -> WriteResultModel:
        """
        Record today's occurrence as taken.
        """
        return await self.update(
            kind=kind,
            patch=ReminderPatchModel(last_completed_at=at or datetime.now(UTC)),
            reminder_id=reminder_id,
            scheduler=scheduler,
        )

    async def mark_skipped(
        self,
        kind: SourceKindEnum,
        reminder_id: str,
        at: datetime | None = None,
        scheduler: Scheduler | None = None,
    ) -> WriteResultModel:
        """
        Record today's occurrence as skipped.
        """
        return await self.update(
            kind=kind,
            patch=ReminderPatchModel(last_skipped_at=at or datetime.now(UTC)),
            reminder_id=reminder_id,
            scheduler=scheduler,
        )

    @start_as_current_span("engine_toggle")
    async def toggle(
        self,
        kind: SourceKindEnum,
        reminder_id: str,
        is_active: bool | None = None,
        scheduler: Scheduler | None = None,
    ) -> WriteResultModel:
        """
        Switch a reminder on or off.

        Without an explicit value, the last known value is flipped. Linked reminders show the new value right away, and go back to the previous one if the backend refuses.
        """
        key = (kind, reminder_id)
        if is_active is None:
            # A toggle in flight wins over the last published value
            current = self.merge.override(key)
            if current is None:
                known = self._known(key)
                if not known:
                    return WriteResultModel(
                        details=["Reminder not found."],
                        error=ErrorKindEnum.NOT_FOUND,
                    )
                current = known.is_active
            is_active = not current
        target = is_active

        if kind == SourceKindEnum.STANDALONE:
            return await self._write(
                key=key,
                linked=None,
                standalone=lambda: self.standalone.toggle(reminder_id, target, scheduler),
            )

        async def _linked_toggle() -> ReminderModel:
            await self.merge.set_override(key, target)
            return await self.linked.toggle(reminder_id, target)

        async def _rollback() -> None:
            await self.merge.clear_override(key)

        return await self._write(
            key=key,
            linked=_linked_toggle,
            rollback=_rollback,
            standalone=None,
        )

    @start_as_current_span("engine_delete")
    async def delete(
        self,
        kind: SourceKindEnum,
        reminder_id: str,
        scheduler: Scheduler | None = None,
    ) -> WriteResultModel:
        """
        Delete a reminder.

        The reminder is hidden right away, and stays hidden until a fetch started after the deletion confirms it is gone.
        """
        key = (kind, reminder_id)

        async def _linked_delete() -> None:
            self.merge.register_exclusion(key)
            await self.linked.delete(reminder_id)

        async def _standalone_delete() -> None:
            self.merge.register_exclusion(key)
            await self.standalone.delete(reminder_id, scheduler)

        async def _rollback() -> None:
            self.merge.restore(key)

        return await self._write(
            key=key,
            linked=_linked_delete,
            rollback=_rollback,
            standalone=_standalone_delete,
        )

    def stats(
        self,
        now: datetime | None = None,
        hours_ahead: int | None = None,
    ) -> ReminderStatsModel:
        """
        Statistics of the last published reminders, evaluated at `now`.
        """
        now = now or self.now()
        hours_ahead = (
            self._config.scheduling.upcoming_window_hour
            if hours_ahead is None
            else hours_ahead
        )
        reminders = [item.reminder for item in self._snapshot.reminders]
        return ReminderStatsModel(
            active=sum(1 for r in reminders if r.is_active),
            overdue=sum(
                1
                for r in reminders
                if classify(r, now, self._config.scheduling).state == StateEnum.OVERDUE
            ),
            today=sum(1 for r in reminders if is_today(r, now)),
            total=len(reminders),
            upcoming=sum(
                1
                for r in reminders
                if is_upcoming_within(r, now, hours_ahead, self._config.scheduling)
            ),
        )

    def export_standalone(self) -> str:
        """
        Serialize the standalone reminders to JSON.
        """
        return ReminderExportModel(
            reminders=self.standalone.reminders,
            version=self._config.version,
        ).model_dump_json(indent=2)

    @start_as_current_span("engine_import_standalone")
    async def import_standalone(
        self,
        raw: str | bytes,
        scheduler: Scheduler | None = None,
    ) -> ReminderImportModel:
        """
        Create standalone reminders from an export, or from a bare list of reminders.

        Invalid entries are skipped and reported, the others are imported.
        """
        try:
            data = from_json(raw)
        except ValueError:
            return ReminderImportModel(errors=["File is not valid JSON."])
        if isinstance(data, dict):
            data = data.get("reminders")
        try:
            entries = _import_adapter.validate_python(data)
        except ValidationError:
            return ReminderImportModel(errors=["No reminders found in file."])

        res = ReminderImportModel()
        for i, entry in enumerate(entries):
            entry.pop("medicine_id", None)
            result = await self.create(SourceKindEnum.STANDALONE, entry, scheduler)
            if result.ok:
                res.imported += 1
            else:
                res.errors.append(
                    f"Reminder {i + 1}: {'; '.join(result.details)}"
                )
        logger.info("Imported %s reminders, %s errors", res.imported, len(res.errors))
        return res

    async def _write(
        self,
        key: ReminderKey,
        linked: Callable[[], Awaitable[ReminderModel | None]] | None,
        standalone: Callable[[], Awaitable[ReminderModel | None]] | None,
        rollback: Callable[[], Awaitable[None]] | None = None,
    ) -> WriteResultModel:
        """
        Run a write on an existing reminder.

        The reminder is skipped by the ticks while the write is in flight. Only the latest write on a reminder rolls back its optimistic state.
        """
        kind, reminder_id = key
        SpanAttributeEnum.REMINDER_ID.attribute(reminder_id)
        SpanAttributeEnum.REMINDER_KIND.attribute(kind.value)

        if kind == SourceKindEnum.LINKED:
            auth = await self.guard.authorize(_LINKED_WRITE)
            if not auth.authorized:
                return _refused(auth)
            call = linked
        else:
            call = standalone
        assert call

        version = self._versions.get(key, 0) + 1
        self._versions[key] = version
        self._pending[key] = self._pending.get(key, 0) + 1
        try:
            reminder = await call()
        except BackendNotFoundError:
            # Already gone, nothing left to do
            return WriteResultModel()
        except BackendError as e:
            if rollback and self._versions.get(key) == version:
                await rollback()
            return _backend_failure(e)
        finally:
            count = self._pending.get(key, 0) - 1
            if count > 0:
                self._pending[key] = count
            else:
                self._pending.pop(key, None)
        return WriteResultModel(reminder=reminder)

    def _known(self, key: ReminderKey) -> ReminderModel | None:
        # Local store holds the optimistic value of writes in flight
        if key[0] == SourceKindEnum.STANDALONE:
            local = self.standalone.get(key[1])
            if local:
                return local
        for item in self._snapshot.reminders:
            if item.reminder.key == key:
                return item.reminder
        return None


def _refused(auth: AuthorizationModel) -> WriteResultModel:
    return WriteResultModel(
        details=[auth.message] if auth.message else [],
        error=ErrorKindEnum.UNAUTHENTICATED
        if auth.reason == RefusalReasonEnum.UNAUTHENTICATED
        else ErrorKindEnum.SESSION_EXPIRED,
    )


def _backend_failure(e: BackendError) -> WriteResultModel:
    logger.warning("Write failed: %s", type(e).__name__)
    if isinstance(e, BackendAuthError):
        return WriteResultModel(
            details=["Your session has expired, please log in again."],
            error=ErrorKindEnum.SESSION_EXPIRED,
        )
    if isinstance(e, BackendNotFoundError):
        return WriteResultModel(
            details=["Medicine not found."],
            error=ErrorKindEnum.NOT_FOUND,
        )
    if isinstance(e, BackendMalformedError):
        return WriteResultModel(
            details=["Unexpected answer from the service, please retry later."],
            error=ErrorKindEnum.NETWORK_FAILURE,
        )
    if isinstance(e, BackendNetworkError):
        return WriteResultModel(
            details=["Service unavailable, please retry later."],
            error=ErrorKindEnum.NETWORK_FAILURE,
        )
    return WriteResultModel(
        details=["Reminder refused by the service."],
        error=ErrorKindEnum.VALIDATION_FAILURE,
    )


def _validation_failure(e: ValidationError) -> WriteResultModel:
    return WriteResultModel(
        details=[
            f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ],
        error=ErrorKindEnum.VALIDATION_FAILURE,
    )
