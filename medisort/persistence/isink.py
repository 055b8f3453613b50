from abc import ABC, abstractmethod

from medisort.models.notification import NotificationEventModel


class INotificationSink(ABC):
    """
    Presentation layer consuming the notifications.

    Purely a consumer, it never calls back into the engine.
    """

    @abstractmethod
    async def publish(self, event: NotificationEventModel) -> None:
        pass

    @abstractmethod
    async def badge(self, count: int) -> None:
        pass
