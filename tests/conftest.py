import random
import string
from datetime import UTC, datetime
from typing import Any

import pytest

from medisort.helpers.config import CONFIG
from medisort.helpers.config_models.cache import MemoryModel
from medisort.helpers.config_models.notification import NotificationModel
from medisort.helpers.config_models.session import SessionModel
from medisort.helpers.engine import ReminderEngine
from medisort.models.notification import NotificationEventModel
from medisort.models.reminder import ReminderModel, SourceKindEnum
from medisort.persistence.isink import INotificationSink
from medisort.persistence.memory import MemoryCache
from medisort.persistence.mock import (
    MockCredentialIssuer,
    MockLinkedBackend,
    MockStandaloneBackend,
)


class RecordingSink(INotificationSink):
    """
    Sink keeping everything it receives, optionally failing on publish.
    """

    badges: list[int]
    events: list[NotificationEventModel]
    fail: bool

    def __init__(self, fail: bool = False) -> None:
        self.badges = []
        self.events = []
        self.fail = fail

    async def publish(self, event: NotificationEventModel) -> None:
        if self.fail:
            raise RuntimeError("Sink is broken")
        self.events.append(event)

    async def badge(self, count: int) -> None:
        self.badges.append(count)


class Backends:
    """
    Mock collaborators of an engine, exposed to drive failures from the tests.
    """

    cache: MemoryCache
    issuer: MockCredentialIssuer
    linked: MockLinkedBackend
    standalone: MockStandaloneBackend

    def __init__(self) -> None:
        mock = CONFIG.backend.mock
        assert mock
        self.cache = MemoryCache(MemoryModel())
        self.issuer = MockCredentialIssuer(mock)
        self.linked = MockLinkedBackend(mock)
        self.standalone = MockStandaloneBackend()


def make_reminder(**kwargs: Any) -> ReminderModel:
    """
    Build a reminder with sensible defaults, created on Monday 2024-01-01.
    """
    return ReminderModel.model_validate(
        {
            "created_at": datetime(2024, 1, 1, tzinfo=UTC),
            "id": "1",
            "label": "Aspirin",
            "source_kind": SourceKindEnum.STANDALONE,
            "time_of_day": "09:00",
            "updated_at": datetime(2024, 1, 1, tzinfo=UTC),
            **kwargs,
        }
    )


@pytest.fixture
def random_text() -> str:
    text = "".join(random.choice(string.printable) for _ in range(100))
    return text


@pytest.fixture
def backends() -> Backends:
    return Backends()


@pytest.fixture
def engine(backends: Backends) -> ReminderEngine:
    config = CONFIG.model_copy(
        update={
            "notification": NotificationModel(),
            "session": SessionModel(refresh_timeout_sec=0.5),
        }
    )
    return ReminderEngine(
        cache=backends.cache,
        config=config,
        issuer=backends.issuer,
        linked_backend=backends.linked,
        standalone_backend=backends.standalone,
    )


@pytest.fixture
def sink(engine: ReminderEngine) -> RecordingSink:
    sink = RecordingSink()
    engine.dispatcher.subscribe(sink)
    return sink
