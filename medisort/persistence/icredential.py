from abc import ABC, abstractmethod

from medisort.helpers.monitoring import start_as_current_span
from medisort.models.readiness import ReadinessEnum
from medisort.models.session import IdentityModel


class ICredentialIssuer(ABC):
    @abstractmethod
    @start_as_current_span("credential_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("credential_login")
    async def login(self, identity: IdentityModel) -> str:
        """
        Exchange an identity for a signed token.

        Raises `BackendAuthError` if refused, `BackendNetworkError` on transient failures.
        """

    @abstractmethod
    @start_as_current_span("credential_refresh")
    async def refresh(self, token: str) -> str:
        """
        Exchange a token for a fresh one.

        Raises `BackendAuthError` if refused, `BackendNetworkError` on transient failures.
        """
