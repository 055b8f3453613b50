from datetime import UTC, datetime

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from medisort.helpers.logging import logger
from medisort.models.reminder import ReminderKey, ReminderModel, SourceKindEnum
from medisort.models.source import SourceResultModel, SourceStatusEnum
from medisort.persistence.icache import ICache


class OverrideModel(BaseModel):
    """
    Local `is_active` value not yet confirmed by the backend.
    """

    fetch_token: int = Field(default=0, exclude=True)
    """Last fetch token issued when the override was set."""
    id: str
    is_active: bool
    set_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source_kind: SourceKindEnum

    @property
    def key(self) -> ReminderKey:
        return (self.source_kind, self.id)


_overrides_adapter = TypeAdapter(list[OverrideModel])


def sort_key(reminder: ReminderModel) -> tuple:
    """
    Stable ordering: time of day, then source kind, then identifier.

    Numeric identifiers are compared as numbers.
    """
    rid = reminder.id
    id_key = (0, int(rid), "") if rid.isdigit() else (1, 0, rid)
    return (reminder.time_of_day, reminder.source_kind.value, id_key)


class MergeEngine:
    """
    Merge the reminder sources into one timeline.

    Sole owner of the override map, the exclusion set and the last known good data. None of them are exposed, they change only through the public methods.
    """

    _cache: ICache
    _cache_key: str
    _cache_ttl_sec: int
    _exclusions: dict[ReminderKey, int]
    _fetch_token: int
    _last_good: dict[SourceKindEnum, list[ReminderModel]]
    _overrides: dict[ReminderKey, OverrideModel]

    def __init__(
        self,
        cache: ICache,
        cache_ttl_sec: int,
        cache_key: str = "medisort_overrides",
    ):
        self._cache = cache
        self._cache_key = cache_key
        self._cache_ttl_sec = cache_ttl_sec
        self._exclusions = {}
        self._fetch_token = 0
        self._last_good = {}
        self._overrides = {}

    @property
    def owned_keys(self) -> list[str]:
        return [self._cache_key]

    def begin_fetch(self) -> int:
        """
        Issue the token of a fetch about to start.

        Tokens only grow, a fetch with a greater token started later.
        """
        self._fetch_token += 1
        return self._fetch_token

    def merge(
        self,
        linked: SourceResultModel,
        standalone: SourceResultModel,
    ) -> list[ReminderModel]:
        """
        Build the ordered timeline from both source results.

        Excluded reminders are removed, overrides are applied. Reminders of different kinds never dedup each other.
        """
        by_key: dict[ReminderKey, ReminderModel] = {}
        for reminder in self._resolve(linked) + self._resolve(standalone):
            # Within a kind, the last fetched wins
            by_key[reminder.key] = reminder

        res = []
        for key, reminder in by_key.items():
            if key in self._exclusions:
                continue
            override = self._overrides.get(key)
            if override and override.is_active != reminder.is_active:
                reminder = reminder.model_copy(update={"is_active": override.is_active})
            res.append(reminder)

        return sorted(res, key=sort_key)

    async def confirm_fetch(
        self,
        kind: SourceKindEnum,
        reminders: list[ReminderModel],
        fetch_token: int,
    ) -> None:
        """
        Reconcile exclusions and overrides with a successful fetch.

        Only fetches started after an exclusion or override was registered can release it.
        """
        fetched = {reminder.key: reminder for reminder in reminders}

        for key, token in list(self._exclusions.items()):
            if key[0] == kind and fetch_token > token and key not in fetched:
                logger.debug("Deletion of %s confirmed", key)
                del self._exclusions[key]

        changed = False
        for key, override in list(self._overrides.items()):
            if key[0] != kind or fetch_token <= override.fetch_token:
                continue
            reminder = fetched.get(key)
            if (
                not reminder
                or reminder.is_active == override.is_active
                or reminder.updated_at > override.set_at
            ):
                logger.debug("Override of %s released", key)
                del self._overrides[key]
                changed = True

        if changed:
            await self._save_overrides()

    def register_exclusion(self, key: ReminderKey) -> None:
        """
        Hide a reminder while its deletion is in flight.
        """
        self._exclusions[key] = self._fetch_token

    def restore(self, key: ReminderKey) -> None:
        """
        Show a reminder again after its deletion failed.
        """
        self._exclusions.pop(key, None)

    def is_excluded(self, key: ReminderKey) -> bool:
        return key in self._exclusions

    def override(self, key: ReminderKey) -> bool | None:
        override = self._overrides.get(key)
        return override.is_active if override else None

    async def set_override(self, key: ReminderKey, is_active: bool) -> None:
        """
        Apply a local `is_active` value until a later fetch confirms or supersedes it.

        The in-memory map is updated before persisting, so the next merge sees it.
        """
        self._overrides[key] = OverrideModel(
            fetch_token=self._fetch_token,
            id=key[1],
            is_active=is_active,
            source_kind=key[0],
        )
        await self._save_overrides()

    async def clear_override(self, key: ReminderKey) -> None:
        if self._overrides.pop(key, None):
            await self._save_overrides()

    def purge_all(self) -> None:
        """
        Clear every piece of in-memory state.

        Persisted overrides are deleted by the caller, along with the other owned keys.
        """
        self._exclusions.clear()
        self._last_good.clear()
        self._overrides.clear()

    async def load(self) -> None:
        """
        Load the overrides persisted by a previous run.

        Any fetch started from now can release them.
        """
        raw = await self._cache.get(self._cache_key)
        if not raw:
            return
        try:
            overrides = _overrides_adapter.validate_json(raw)
        except ValidationError:
            logger.exception("Persisted overrides are malformed, dropping them")
            await self._cache.delete(self._cache_key)
            return
        for override in overrides:
            self._overrides[override.key] = override.model_copy(
                update={"fetch_token": self._fetch_token}
            )

    def _resolve(self, result: SourceResultModel) -> list[ReminderModel]:
        if result.status == SourceStatusEnum.OK:
            self._last_good[result.source_kind] = result.reminders
            return result.reminders
        if result.status == SourceStatusEnum.REFUSED:
            self._last_good.pop(result.source_kind, None)
            return []
        # Network failure, prefer the offline copy served by the source
        if result.reminders:
            return result.reminders
        return self._last_good.get(result.source_kind, [])

    async def _save_overrides(self) -> None:
        if not self._overrides:
            await self._cache.delete(self._cache_key)
            return
        await self._cache.set(
            key=self._cache_key,
            ttl_sec=self._cache_ttl_sec,
            value=_overrides_adapter.dump_json(list(self._overrides.values())),
        )
