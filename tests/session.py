import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import SecretStr
from pytest_assume.plugin import assume

from medisort.helpers.config import CONFIG
from medisort.helpers.config_models.cache import MemoryModel
from medisort.helpers.config_models.session import SessionModel
from medisort.helpers.session import SessionGuard
from medisort.models.reminder import SourceKindEnum
from medisort.models.session import (
    AccessEnum,
    AuthorizationEnum,
    IdentityModel,
    OperationModel,
    RefusalReasonEnum,
    SessionStateEnum,
)
from medisort.persistence.errors import BackendAuthError, BackendNetworkError
from medisort.persistence.memory import MemoryCache
from medisort.persistence.mock import MockCredentialIssuer

_LINKED_READ = OperationModel(access=AccessEnum.READ, source_kind=SourceKindEnum.LINKED)
_LINKED_WRITE = OperationModel(
    access=AccessEnum.WRITE, source_kind=SourceKindEnum.LINKED
)
_STANDALONE_WRITE = OperationModel(
    access=AccessEnum.WRITE, source_kind=SourceKindEnum.STANDALONE
)
_IDENTITY = IdentityModel(password=SecretStr("secret"), username="alice")


def _guard() -> tuple[SessionGuard, MockCredentialIssuer, MemoryCache]:
    assert CONFIG.backend.mock
    cache = MemoryCache(MemoryModel())
    issuer = MockCredentialIssuer(CONFIG.backend.mock)
    config = SessionModel(refresh_timeout_sec=0.2)
    return SessionGuard(cache=cache, config=config, issuer=issuer), issuer, cache


async def _with_token(token: str) -> tuple[SessionGuard, MockCredentialIssuer]:
    """
    Build a guard restoring the given token, as after a restart.
    """
    guard, issuer, cache = _guard()
    await cache.set(key=SessionModel().cache_key, ttl_sec=60, value=token)
    await guard.restore()
    return guard, issuer


@pytest.mark.asyncio(loop_scope="session")
async def test_no_credential() -> None:
    """
    Test linked operations are refused without a session, standalone ones are not.
    """
    guard, _, _ = _guard()

    assume(guard.state() == SessionStateEnum.NO_CREDENTIAL)
    for operation in (_LINKED_READ, _LINKED_WRITE):
        res = await guard.authorize(operation)
        assume(res.status == AuthorizationEnum.REFUSED)
        assume(res.reason == RefusalReasonEnum.UNAUTHENTICATED)
    assume(guard.check(_STANDALONE_WRITE).authorized)


@pytest.mark.asyncio(loop_scope="session")
async def test_login_and_forget() -> None:
    """
    Test a login gives a valid session, persisted for the next run, and forget drops it.
    """
    guard, issuer, cache = _guard()

    status = await guard.login(_IDENTITY)

    assume(status.state == SessionStateEnum.VALID)
    assume(status.subject == "alice")
    assume(status.seconds_remaining > 0)
    assume(guard.check(_LINKED_WRITE).authorized)
    assume(await cache.get(SessionModel().cache_key))

    # Restored by another guard sharing the cache
    other = SessionGuard(cache=cache, config=SessionModel(), issuer=issuer)
    assume((await other.restore()).state == SessionStateEnum.VALID)

    guard.forget()
    assume(guard.state() == SessionStateEnum.NO_CREDENTIAL)
    assume(guard.token() is None)


@pytest.mark.asyncio(loop_scope="session")
async def test_login_refused() -> None:
    """
    Test a refused identity raises and leaves the session closed.
    """
    guard, _, _ = _guard()
    with pytest.raises(BackendAuthError):
        await guard.login(IdentityModel(password=SecretStr(""), username="alice"))
    assume(guard.state() == SessionStateEnum.NO_CREDENTIAL)


@pytest.mark.asyncio(loop_scope="session")
async def test_expired_write_refused_without_refresh() -> None:
    """
    Test a write on an expired session is refused, and no refresh is attempted.
    """
    assert CONFIG.backend.mock
    expired = MockCredentialIssuer(CONFIG.backend.mock).issue("alice", ttl_sec=-10)
    guard, issuer = await _with_token(expired)

    assume(guard.state() == SessionStateEnum.EXPIRED)
    assume(guard.check(_LINKED_READ).status == AuthorizationEnum.NEEDS_REFRESH)

    res = await guard.authorize(_LINKED_WRITE)

    assume(res.status == AuthorizationEnum.REFUSED)
    assume(res.reason == RefusalReasonEnum.SESSION_EXPIRED)
    assume(issuer.calls == 0)


@pytest.mark.asyncio(loop_scope="session")
async def test_expired_read_refreshes_once() -> None:
    """
    Test a read on an expired session refreshes it, then is authorized.
    """
    assert CONFIG.backend.mock
    expired = MockCredentialIssuer(CONFIG.backend.mock).issue("alice", ttl_sec=-10)
    guard, issuer = await _with_token(expired)

    res = await guard.authorize(_LINKED_READ)

    assume(res.authorized)
    assume(issuer.calls == 1)
    assume(guard.state() == SessionStateEnum.VALID)
    assume(guard.token() != expired)


@pytest.mark.asyncio(loop_scope="session")
@pytest.mark.repeat(10)  # Catch multi-threading and concurrency issues
async def test_refresh_single_flight() -> None:
    """
    Test concurrent reads on an expired session share a single refresh.
    """
    assert CONFIG.backend.mock
    expired = MockCredentialIssuer(CONFIG.backend.mock).issue("alice", ttl_sec=-10)
    guard, issuer = await _with_token(expired)
    issuer.latency_sec = 0.05

    results = await asyncio.gather(*[guard.authorize(_LINKED_READ) for _ in range(5)])

    assume(all(res.authorized for res in results))
    assume(issuer.calls == 1)


@pytest.mark.parametrize(
    "latency_sec, failure",
    [
        pytest.param(0, BackendNetworkError("down"), id="network_failure"),
        pytest.param(0, BackendAuthError("revoked"), id="refused"),
        pytest.param(1, None, id="timeout"),
    ],
)
@pytest.mark.asyncio(loop_scope="session")
async def test_refresh_failure(
    latency_sec: float,
    failure: Exception | None,
) -> None:
    """
    Test a failed or slow refresh refuses the read as expired, with a generic message.
    """
    assert CONFIG.backend.mock
    expired = MockCredentialIssuer(CONFIG.backend.mock).issue("alice", ttl_sec=-10)
    guard, issuer = await _with_token(expired)
    issuer.failure = failure  # pyright: ignore
    issuer.latency_sec = latency_sec

    res = await guard.authorize(_LINKED_READ)

    assume(res.status == AuthorizationEnum.REFUSED)
    assume(res.reason == RefusalReasonEnum.SESSION_EXPIRED)
    assume(res.message and "revoked" not in res.message)
    assume(guard.state() == SessionStateEnum.EXPIRED)


@pytest.mark.asyncio(loop_scope="session")
async def test_undecodable_credential() -> None:
    """
    Test a malformed persisted credential is dropped and treated as no session.
    """
    guard, issuer, cache = _guard()
    await cache.set(key=SessionModel().cache_key, ttl_sec=60, value="not-a-jwt")

    status = await guard.restore()

    assume(status.state == SessionStateEnum.NO_CREDENTIAL)
    assume(not await cache.get(SessionModel().cache_key))
    assume(issuer.calls == 0)


@pytest.mark.asyncio(loop_scope="session")
async def test_refresh_if_expiring() -> None:
    """
    Test the credential is refreshed ahead of time only when close to its expiry.
    """
    assert CONFIG.backend.mock
    fresh, issuer = await _with_token(
        MockCredentialIssuer(CONFIG.backend.mock).issue("alice")
    )
    assume(not await fresh.refresh_if_expiring())
    assume(issuer.calls == 0)

    expiring, issuer = await _with_token(
        MockCredentialIssuer(CONFIG.backend.mock).issue("alice", ttl_sec=60)
    )
    assume(await expiring.refresh_if_expiring())
    assume(issuer.calls == 1)
    assume(expiring.status().seconds_remaining > 60)


@pytest.mark.asyncio(loop_scope="session")
async def test_generation() -> None:
    """
    Test the session generation changes on login and logout, and stays across a refresh.
    """
    guard, _, _ = _guard()
    start = guard.generation

    await guard.login(_IDENTITY)
    logged_in = guard.generation
    assume(logged_in != start)

    # Half a minute before the expiry
    soon = datetime.now(UTC) + timedelta(hours=1, seconds=-30)
    assume(await guard.refresh_if_expiring(now=soon))
    assume(guard.generation == logged_in)

    guard.forget()
    assume(guard.generation != logged_in)
