import asyncio
from datetime import UTC, datetime, timedelta

import jwt
from pydantic import SecretStr

from medisort.helpers.config_models.session import SessionModel
from medisort.helpers.logging import logger
from medisort.helpers.monitoring import (
    SpanAttributeEnum,
    counter_add,
    session_refresh,
    start_as_current_span,
)
from medisort.models.reminder import SourceKindEnum
from medisort.models.session import (
    AccessEnum,
    AuthorizationEnum,
    AuthorizationModel,
    CredentialModel,
    IdentityModel,
    OperationModel,
    RefusalReasonEnum,
    SessionStateEnum,
    SessionStatusModel,
)
from medisort.persistence.errors import BackendAuthError, BackendError
from medisort.persistence.icache import ICache
from medisort.persistence.icredential import ICredentialIssuer

_AUTHORIZED = AuthorizationModel(status=AuthorizationEnum.AUTHORIZED)
_NEEDS_REFRESH = AuthorizationModel(status=AuthorizationEnum.NEEDS_REFRESH)
_SESSION_EXPIRED = AuthorizationModel(
    message="Your session has expired, please log in again.",
    reason=RefusalReasonEnum.SESSION_EXPIRED,
    status=AuthorizationEnum.REFUSED,
)
_UNAUTHENTICATED = AuthorizationModel(
    message="Please log in to access your medicine reminders.",
    reason=RefusalReasonEnum.UNAUTHENTICATED,
    status=AuthorizationEnum.REFUSED,
)


class SessionGuard:
    """
    Single owner of the session credential.

    The token is decoded here and nowhere else. Other components only see the authorization outcome and the raw token to forward.
    """

    _cache: ICache
    _config: SessionModel
    _credential: CredentialModel | None
    _generation: int
    _issuer: ICredentialIssuer
    _refresh_lock: asyncio.Lock

    def __init__(
        self,
        cache: ICache,
        config: SessionModel,
        issuer: ICredentialIssuer,
    ):
        self._cache = cache
        self._config = config
        self._credential = None
        self._generation = 0
        self._issuer = issuer
        self._refresh_lock = asyncio.Lock()

    @property
    def credential(self) -> CredentialModel | None:
        return self._credential

    @property
    def generation(self) -> int:
        """
        Identifier of the current session.

        Changes on login, logout and restore, not on refresh. Data fetched under another generation belongs to another session.
        """
        return self._generation

    @property
    def owned_keys(self) -> list[str]:
        """
        Cache keys holding session data, to purge on logout.
        """
        return [self._config.cache_key]

    def token(self) -> str | None:
        """
        Raw token to forward to the backend, if any.
        """
        if not self._credential:
            return None
        return self._credential.token.get_secret_value()

    def state(self, now: datetime | None = None) -> SessionStateEnum:
        if not self._credential:
            return SessionStateEnum.NO_CREDENTIAL
        now = now or datetime.now(UTC)
        if now >= self._credential.expires_at + timedelta(
            seconds=self._config.leeway_sec
        ):
            return SessionStateEnum.EXPIRED
        return SessionStateEnum.VALID

    def check(
        self,
        operation: OperationModel,
        now: datetime | None = None,
    ) -> AuthorizationModel:
        """
        Decide if an operation can run with the current credential.

        Never performs I/O. An expired session gives `NEEDS_REFRESH` for reads, and is refused for writes as an in-flight edit must not be silently replayed with another identity.
        """
        if operation.source_kind == SourceKindEnum.STANDALONE:
            return _AUTHORIZED

        state = self.state(now)
        if state == SessionStateEnum.NO_CREDENTIAL:
            return _UNAUTHENTICATED
        if state == SessionStateEnum.EXPIRED:
            if operation.access == AccessEnum.WRITE:
                return _SESSION_EXPIRED
            return _NEEDS_REFRESH
        return _AUTHORIZED

    @start_as_current_span("session_authorize")
    async def authorize(self, operation: OperationModel) -> AuthorizationModel:
        """
        Same as `check`, but resolves `NEEDS_REFRESH` with exactly one refresh attempt.
        """
        res = self.check(operation)
        SpanAttributeEnum.SESSION_STATE.attribute(self.state().value)
        if res.status != AuthorizationEnum.NEEDS_REFRESH:
            return res

        stale = self._credential
        assert stale
        if not await self._refresh(stale):
            return _SESSION_EXPIRED

        res = self.check(operation)
        if res.status == AuthorizationEnum.NEEDS_REFRESH:
            # Issuer handed back a token already expired
            return _SESSION_EXPIRED
        return res

    async def refresh_if_expiring(self, now: datetime | None = None) -> bool:
        """
        Refresh a valid credential about to expire.

        Returns `True` if a new credential was installed.
        """
        now = now or datetime.now(UTC)
        credential = self._credential
        if not credential or self.state(now) != SessionStateEnum.VALID:
            return False
        remaining = (credential.expires_at - now).total_seconds()
        if remaining >= self._config.refresh_buffer_sec:
            return False
        logger.info("Session expires in %ss, refreshing", int(remaining))
        return await self._refresh(credential)

    @start_as_current_span("session_login")
    async def login(self, identity: IdentityModel) -> SessionStatusModel:
        """
        Exchange the identity for a credential and persist it.

        Raises `BackendAuthError` if refused or if the issued token cannot be decoded, `BackendNetworkError` on transient failures.
        """
        token = await self._issuer.login(identity)
        credential = self.decode(token)
        if not credential:
            raise BackendAuthError("Issued token cannot be decoded")
        self._generation += 1
        await self._install(credential)
        logger.info("Logged in as %s", credential.subject)
        return self.status()

    def forget(self) -> None:
        """
        Drop the in-memory credential.

        Synchronous so that logout can clear all the state without yielding.
        """
        self._credential = None
        self._generation += 1

    @start_as_current_span("session_restore")
    async def restore(self) -> SessionStatusModel:
        """
        Load the credential persisted by a previous run.

        A credential that cannot be decoded is deleted.
        """
        raw = await self._cache.get(self._config.cache_key)
        if not raw:
            return self.status()
        credential = self.decode(raw.decode())
        if not credential:
            logger.warning("Persisted credential cannot be decoded, dropping it")
            await self._cache.delete(self._config.cache_key)
            return self.status()
        self._credential = credential
        self._generation += 1
        logger.info("Session restored for %s", credential.subject)
        return self.status()

    def status(self, now: datetime | None = None) -> SessionStatusModel:
        now = now or datetime.now(UTC)
        credential = self._credential
        if not credential:
            return SessionStatusModel(state=SessionStateEnum.NO_CREDENTIAL)
        return SessionStatusModel(
            expires_at=credential.expires_at,
            seconds_remaining=max(
                0, int((credential.expires_at - now).total_seconds())
            ),
            state=self.state(now),
            subject=credential.subject,
        )

    def decode(self, token: str) -> CredentialModel | None:
        """
        Decode the token claims.

        The signature is only verified when a verification key is configured. Expiry is not checked here, `state` does it. Returns `None` if the token cannot be used.
        """
        try:
            if self._config.verification_key:
                claims = jwt.decode(
                    algorithms=self._config.algorithms,
                    jwt=token,
                    key=self._config.verification_key.get_secret_value(),
                    options={"verify_exp": False},
                )
            else:
                claims = jwt.decode(
                    jwt=token,
                    options={"verify_exp": False, "verify_signature": False},
                )
        except jwt.PyJWTError:
            logger.warning("Credential cannot be decoded")
            return None

        exp = claims.get("exp")
        if not isinstance(exp, int | float):
            logger.warning("Credential has no expiry claim")
            return None
        iat = claims.get("iat")
        return CredentialModel(
            expires_at=datetime.fromtimestamp(exp, UTC),
            issued_at=datetime.fromtimestamp(iat, UTC)
            if isinstance(iat, int | float)
            else None,
            subject=str(claims["sub"]) if claims.get("sub") is not None else None,
            token=SecretStr(token),
        )

    async def _refresh(self, stale: CredentialModel) -> bool:
        async with self._refresh_lock:
            current = self._credential
            # Logged out meanwhile
            if not current:
                return False
            # Another caller already refreshed
            if current is not stale:
                return self.state() == SessionStateEnum.VALID

            counter_add(session_refresh, 1)
            try:
                token = await asyncio.wait_for(
                    self._issuer.refresh(current.token.get_secret_value()),
                    timeout=self._config.refresh_timeout_sec,
                )
            except TimeoutError:
                logger.warning("Session refresh timed out")
                return False
            except BackendError as e:
                logger.warning("Session refresh failed: %s", type(e).__name__)
                return False

            credential = self.decode(token)
            if not credential:
                return False
            # Logged out during the refresh, the new credential is not wanted
            if self._credential is not current:
                return False
            await self._install(credential)
            logger.info("Session refreshed")
            return True

    async def _install(self, credential: CredentialModel) -> None:
        """
        Use the credential and persist it.

        A cache failure only costs the session on next restart, it is logged and the credential stays in use.
        """
        self._credential = credential
        try:
            await self._cache.set(
                key=self._config.cache_key,
                ttl_sec=max(
                    1, int((credential.expires_at - datetime.now(UTC)).total_seconds())
                )
                + 24 * 60 * 60,  # Expired credentials are kept to allow a refresh
                value=credential.token.get_secret_value(),
            )
            # Logged out while persisting
            if self._credential is not credential:
                await self._cache.delete(self._config.cache_key)
        except Exception:
            logger.exception("Cannot persist the credential")
