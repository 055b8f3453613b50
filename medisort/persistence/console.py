from medisort.helpers.logging import logger
from medisort.models.notification import NotificationEventModel
from medisort.persistence.isink import INotificationSink


class ConsoleSink(INotificationSink):
    """
    Sink writing the notifications to the application logs.

    Default sink when no presentation layer is attached.
    """

    async def publish(self, event: NotificationEventModel) -> None:
        logger.info(
            "Reminder %s is %s: %s (%s)",
            event.label,
            event.state.value,
            event.body,
            event.reminder_id,
        )

    async def badge(self, count: int) -> None:
        logger.info("Badge count is now %s", count)
