from enum import Enum
from functools import cached_property

from pydantic import BaseModel, Field, SecretStr, model_validator

from medisort.persistence.icache import ICache


class ModeEnum(str, Enum):
    MEMORY = "memory"
    """In-process, lost on restart."""
    REDIS = "redis"
    """Shared, survives restarts."""


class MemoryModel(BaseModel, frozen=True):
    max_size: int = Field(default=512, ge=10)

    @cached_property
    def instance(self) -> ICache:
        from medisort.persistence.memory import MemoryCache

        return MemoryCache(self)


class RedisModel(BaseModel, frozen=True):
    database: int = Field(default=0, ge=0)
    host: str
    password: SecretStr | None = None
    port: int = 6379
    prefix: str = Field(default="medisort", min_length=1)
    """Namespace of the keys, to share a database with other services."""
    ssl: bool = True

    @cached_property
    def instance(self) -> ICache:
        from medisort.persistence.redis import RedisCache

        return RedisCache(self)


class CacheModel(BaseModel):
    """
    Local persistence of the credential, the status overrides and the offline copies.
    """

    mode: ModeEnum = ModeEnum.MEMORY
    memory: MemoryModel | None = MemoryModel()  # Object is fully defined by default
    redis: RedisModel | None = None
    ttl_sec: int = Field(default=7 * 24 * 60 * 60, ge=60)
    """Lifetime of the locally persisted data."""

    @model_validator(mode="after")
    def _validate_mode(self) -> "CacheModel":
        """
        The section of the selected mode must be filled.
        """
        if not getattr(self, self.mode.value):
            raise ValueError(f'Config "cache.{self.mode.value}" required by mode "{self.mode.value}"')
        return self

    @cached_property
    def instance(self) -> ICache:
        if self.mode == ModeEnum.REDIS:
            assert self.redis
            return self.redis.instance

        assert self.memory
        return self.memory.instance
