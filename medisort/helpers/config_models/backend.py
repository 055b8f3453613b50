from enum import Enum
from functools import cached_property

from pydantic import BaseModel, Field, SecretStr, ValidationInfo, field_validator

from medisort.persistence.icredential import ICredentialIssuer
from medisort.persistence.ilinked import ILinkedBackend
from medisort.persistence.istandalone import IStandaloneBackend


class ModeEnum(str, Enum):
    HTTP = "http"
    """Use the remote HTTP API."""
    MOCK = "mock"
    """Use in-memory backends, for local development and tests."""


class HttpModel(BaseModel, frozen=True):
    base_url: str
    timeout_sec: float = Field(default=10, gt=0)

    @cached_property
    def credential_issuer(self) -> ICredentialIssuer:
        from medisort.persistence.http_api import (
            HttpCredentialIssuer,
        )

        return HttpCredentialIssuer(self)

    @cached_property
    def linked(self) -> ILinkedBackend:
        from medisort.persistence.http_api import (
            HttpLinkedBackend,
        )

        return HttpLinkedBackend(self)

    @cached_property
    def standalone(self) -> IStandaloneBackend:
        from medisort.persistence.http_api import (
            HttpStandaloneBackend,
        )

        return HttpStandaloneBackend(self)


class MockModel(BaseModel, frozen=True):
    secret: SecretStr = SecretStr("medisort-mock-secret")
    token_ttl_sec: int = Field(default=60 * 60, ge=1)

    @cached_property
    def credential_issuer(self) -> ICredentialIssuer:
        from medisort.persistence.mock import (
            MockCredentialIssuer,
        )

        return MockCredentialIssuer(self)

    @cached_property
    def linked(self) -> ILinkedBackend:
        from medisort.persistence.mock import (
            MockLinkedBackend,
        )

        return MockLinkedBackend(self)

    @cached_property
    def standalone(self) -> IStandaloneBackend:
        from medisort.persistence.mock import (
            MockStandaloneBackend,
        )

        return MockStandaloneBackend()


class BackendModel(BaseModel):
    mode: ModeEnum = ModeEnum.MOCK
    http: HttpModel | None = None
    mock: MockModel | None = MockModel()  # Object is fully defined by default

    @field_validator("http")
    @classmethod
    def _validate_http(
        cls,
        http: HttpModel | None,
        info: ValidationInfo,
    ) -> HttpModel | None:
        if not http and info.data.get("mode", None) == ModeEnum.HTTP:
            raise ValueError("HTTP config required")
        return http

    @field_validator("mock")
    @classmethod
    def _validate_mock(
        cls,
        mock: MockModel | None,
        info: ValidationInfo,
    ) -> MockModel | None:
        if not mock and info.data.get("mode", None) == ModeEnum.MOCK:
            raise ValueError("Mock config required")
        return mock

    @cached_property
    def credential_issuer(self) -> ICredentialIssuer:
        return self._selected.credential_issuer

    @cached_property
    def linked(self) -> ILinkedBackend:
        return self._selected.linked

    @cached_property
    def standalone(self) -> IStandaloneBackend:
        return self._selected.standalone

    @property
    def _selected(self) -> HttpModel | MockModel:
        if self.mode == ModeEnum.MOCK:
            assert self.mock
            return self.mock

        assert self.http
        return self.http
