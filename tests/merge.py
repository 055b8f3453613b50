from datetime import UTC, datetime, timedelta

import pytest
from pytest_assume.plugin import assume

from medisort.helpers.config_models.cache import MemoryModel
from medisort.helpers.merge import MergeEngine
from medisort.models.reminder import ReminderModel, SourceKindEnum
from medisort.models.source import SourceResultModel, SourceStatusEnum
from medisort.persistence.memory import MemoryCache
from tests.conftest import make_reminder


def _merge_engine() -> tuple[MergeEngine, MemoryCache]:
    cache = MemoryCache(MemoryModel())
    return MergeEngine(cache=cache, cache_ttl_sec=60), cache


def _result(
    kind: SourceKindEnum,
    reminders: list[ReminderModel],
    fetch_token: int = 0,
    status: SourceStatusEnum = SourceStatusEnum.OK,
) -> SourceResultModel:
    return SourceResultModel(
        fetch_token=fetch_token,
        reminders=reminders,
        source_kind=kind,
        status=status,
    )


def _linked(reminder_id: str, **kwargs) -> ReminderModel:
    return make_reminder(id=reminder_id, source_kind=SourceKindEnum.LINKED, **kwargs)


def _standalone(reminder_id: str, **kwargs) -> ReminderModel:
    return make_reminder(id=reminder_id, **kwargs)


def test_ordering_and_no_cross_kind_dedup() -> None:
    """
    Test reminders are sorted by time, kind, then numeric identifier, and same identifiers of different kinds are both kept.
    """
    merge, _ = _merge_engine()

    res = merge.merge(
        _result(
            SourceKindEnum.LINKED,
            [_linked("10"), _linked("2"), _linked("1", time_of_day="08:00")],
        ),
        _result(SourceKindEnum.STANDALONE, [_standalone("2"), _standalone("1")]),
    )

    assume(
        [r.key for r in res]
        == [
            (SourceKindEnum.LINKED, "1"),
            (SourceKindEnum.LINKED, "2"),
            (SourceKindEnum.LINKED, "10"),
            (SourceKindEnum.STANDALONE, "1"),
            (SourceKindEnum.STANDALONE, "2"),
        ]
    )


def test_last_fetched_wins() -> None:
    """
    Test a duplicate within a kind keeps the last fetched record.
    """
    merge, _ = _merge_engine()

    res = merge.merge(
        _result(SourceKindEnum.LINKED, [_linked("1", label="Old"), _linked("1", label="New")]),
        _result(SourceKindEnum.STANDALONE, []),
    )

    assume([r.label for r in res] == ["New"])


@pytest.mark.asyncio(loop_scope="session")
async def test_no_resurrection_after_delete() -> None:
    """
    Test a deleted reminder stays hidden while a fetch started before the deletion still returns it.
    """
    merge, _ = _merge_engine()
    key = (SourceKindEnum.LINKED, "1")

    in_flight = merge.begin_fetch()  # Started before the deletion
    merge.register_exclusion(key)
    stale = [_linked("1"), _linked("2")]
    await merge.confirm_fetch(SourceKindEnum.LINKED, stale, in_flight)

    res = merge.merge(
        _result(SourceKindEnum.LINKED, stale, in_flight),
        _result(SourceKindEnum.STANDALONE, []),
    )
    assume([r.id for r in res] == ["2"])
    assume(merge.is_excluded(key))

    # A fetch started after the deletion confirms it
    fresh = merge.begin_fetch()
    await merge.confirm_fetch(SourceKindEnum.LINKED, [_linked("2")], fresh)
    assume(not merge.is_excluded(key))


def test_restore_after_failed_delete() -> None:
    """
    Test a reminder shows up again when its deletion is rolled back.
    """
    merge, _ = _merge_engine()
    key = (SourceKindEnum.STANDALONE, "1")

    merge.register_exclusion(key)
    merge.restore(key)

    res = merge.merge(
        _result(SourceKindEnum.LINKED, []),
        _result(SourceKindEnum.STANDALONE, [_standalone("1")]),
    )
    assume([r.id for r in res] == ["1"])


@pytest.mark.asyncio(loop_scope="session")
async def test_override_confirmed() -> None:
    """
    Test an override wins over the raw value until a later fetch agrees with it.
    """
    merge, cache = _merge_engine()
    key = (SourceKindEnum.LINKED, "1")

    await merge.set_override(key, False)
    assume(await cache.get("medisort_overrides"))

    res = merge.merge(
        _result(SourceKindEnum.LINKED, [_linked("1", is_active=True)]),
        _result(SourceKindEnum.STANDALONE, []),
    )
    assume(res[0].is_active is False)

    # Fetch agreeing with the override
    token = merge.begin_fetch()
    await merge.confirm_fetch(
        SourceKindEnum.LINKED, [_linked("1", is_active=False)], token
    )
    assume(merge.override(key) is None)
    assume(not await cache.get("medisort_overrides"))


@pytest.mark.asyncio(loop_scope="session")
async def test_override_superseded() -> None:
    """
    Test an override is released when the record was changed after it, elsewhere.
    """
    merge, _ = _merge_engine()
    key = (SourceKindEnum.LINKED, "1")
    await merge.set_override(key, False)

    # Fetch started before the override, ignored
    await merge.confirm_fetch(SourceKindEnum.LINKED, [_linked("1")], 0)
    assume(merge.override(key) is False)

    token = merge.begin_fetch()
    await merge.confirm_fetch(
        SourceKindEnum.LINKED,
        [_linked("1", updated_at=datetime.now(UTC) + timedelta(minutes=1))],
        token,
    )
    assume(merge.override(key) is None)


@pytest.mark.asyncio(loop_scope="session")
async def test_overrides_persisted() -> None:
    """
    Test the overrides survive a restart.
    """
    merge, cache = _merge_engine()
    await merge.set_override((SourceKindEnum.STANDALONE, "7"), True)

    restarted = MergeEngine(cache=cache, cache_ttl_sec=60)
    await restarted.load()

    assume(restarted.override((SourceKindEnum.STANDALONE, "7")) is True)


def test_last_known_good() -> None:
    """
    Test a network failure reuses the last good data, and a refusal clears it.
    """
    merge, _ = _merge_engine()
    standalone = _result(SourceKindEnum.STANDALONE, [])

    merge.merge(_result(SourceKindEnum.LINKED, [_linked("1")]), standalone)

    failed = merge.merge(
        _result(SourceKindEnum.LINKED, [], status=SourceStatusEnum.NETWORK_FAILURE),
        standalone,
    )
    assume([r.id for r in failed] == ["1"])

    refused = merge.merge(
        _result(SourceKindEnum.LINKED, [], status=SourceStatusEnum.REFUSED),
        standalone,
    )
    assume(refused == [])

    after_refusal = merge.merge(
        _result(SourceKindEnum.LINKED, [], status=SourceStatusEnum.NETWORK_FAILURE),
        standalone,
    )
    assume(after_refusal == [])


@pytest.mark.asyncio(loop_scope="session")
async def test_purge_all() -> None:
    """
    Test purge clears the overrides, the exclusions and the last good data.
    """
    merge, _ = _merge_engine()
    merge.merge(
        _result(SourceKindEnum.LINKED, [_linked("1")]),
        _result(SourceKindEnum.STANDALONE, []),
    )
    merge.register_exclusion((SourceKindEnum.LINKED, "2"))
    await merge.set_override((SourceKindEnum.LINKED, "1"), False)

    merge.purge_all()

    assume(merge.override((SourceKindEnum.LINKED, "1")) is None)
    assume(not merge.is_excluded((SourceKindEnum.LINKED, "2")))
    assume(
        merge.merge(
            _result(SourceKindEnum.LINKED, [], status=SourceStatusEnum.NETWORK_FAILURE),
            _result(SourceKindEnum.STANDALONE, []),
        )
        == []
    )
