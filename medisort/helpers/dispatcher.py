import asyncio
from datetime import datetime, timedelta

from medisort.helpers.config_models.notification import NotificationModel
from medisort.helpers.logging import logger
from medisort.helpers.monitoring import (
    SpanAttributeEnum,
    counter_add,
    gauge_set,
    notification_badge,
    notification_emitted,
    notification_failed,
    start_as_current_span,
)
from medisort.models.notification import NotificationEventModel
from medisort.models.reminder import (
    CategoryEnum,
    ClassifiedReminderModel,
    ReminderKey,
    ReminderModel,
    SourceKindEnum,
    StateEnum,
)
from medisort.persistence.isink import INotificationSink

CATEGORY_MESSAGES: dict[CategoryEnum, str] = {
    CategoryEnum.APPOINTMENT: "You have an important appointment!",
    CategoryEnum.EXERCISE: "Let's get moving and stay active!",
    CategoryEnum.HEALTH: "Time to take care of your health!",
    CategoryEnum.MEDICATION: "Don't forget your medication!",
    CategoryEnum.NUTRITION: "Fuel your body with good nutrition!",
    CategoryEnum.OTHER: "You have a reminder waiting!",
    CategoryEnum.PERSONAL: "Time for some self-care!",
}

_ALERT_STATES = (StateEnum.DUE, StateEnum.OVERDUE)

_Triple = tuple[ReminderKey, StateEnum, int]


def count_badge(classified: list[ClassifiedReminderModel]) -> int:
    """
    Number of reminders waiting for the user, due or overdue.
    """
    return sum(1 for item in classified if item.classification.state in _ALERT_STATES)


def notification_body(reminder: ReminderModel) -> str:
    if reminder.source_kind == SourceKindEnum.LINKED:
        message = CATEGORY_MESSAGES[CategoryEnum.MEDICATION]
    else:
        message = CATEGORY_MESSAGES[reminder.category]
    if reminder.notes:
        return f"{message} {reminder.notes}"
    return message


class NotificationDispatcher:
    """
    Turn state transitions into notification events.

    Events are emitted when a reminder becomes due or overdue, and when it goes back to upcoming from one of those. Each (reminder, state, minute) is emitted at most once.
    """

    _badge: int | None
    _config: NotificationModel
    _sent: dict[_Triple, datetime]
    _sinks: list[INotificationSink]
    _states: dict[ReminderKey, StateEnum]

    def __init__(self, config: NotificationModel):
        self._badge = None
        self._config = config
        self._sent = {}
        self._sinks = []
        self._states = {}

    def subscribe(self, sink: INotificationSink) -> None:
        if sink not in self._sinks:
            self._sinks.append(sink)

    def unsubscribe(self, sink: INotificationSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    @start_as_current_span("dispatcher_dispatch")
    async def dispatch(
        self,
        classified: list[ClassifiedReminderModel],
        now: datetime,
    ) -> list[NotificationEventModel]:
        """
        Emit the events of an evaluation tick and publish the badge count if it changed.

        Triples are recorded before delivery, a failing sink never causes a second emission.
        """
        self._prune(now)
        bucket = int(now.timestamp()) // 60

        events: list[NotificationEventModel] = []
        # Reminders gone from the collection are forgotten, they come back as first sight
        previous_states = self._states
        self._states = {}
        for item in classified:
            reminder = item.reminder
            state = item.classification.state
            previous = previous_states.get(reminder.key)
            self._states[reminder.key] = state
            if not _is_transition(previous, state):
                continue
            triple = (reminder.key, state, bucket)
            if triple in self._sent:
                continue
            self._sent[triple] = now
            events.append(
                NotificationEventModel(
                    body=notification_body(reminder),
                    fired_at=now,
                    label=reminder.label,
                    reminder_id=reminder.id,
                    source_kind=reminder.source_kind,
                    state=state,
                )
            )

        for event in events:
            await self._publish(event)

        badge = count_badge(classified)
        if badge != self._badge:
            self._badge = badge
            gauge_set(notification_badge, badge)
            await self._publish_badge(badge)

        return events

    def reset(self) -> None:
        """
        Forget every state and emitted triple.
        """
        self._badge = None
        self._sent.clear()
        self._states.clear()

    def _prune(self, now: datetime) -> None:
        limit = now - timedelta(seconds=self._config.dedup_retention_sec)
        for triple, fired_at in list(self._sent.items()):
            if fired_at < limit:
                del self._sent[triple]

    async def _publish(self, event: NotificationEventModel) -> None:
        SpanAttributeEnum.REMINDER_ID.attribute(event.reminder_id)
        SpanAttributeEnum.REMINDER_STATE.attribute(event.state.value)
        for sink in list(self._sinks):
            try:
                await asyncio.wait_for(
                    sink.publish(event),
                    timeout=self._config.sink_timeout_sec,
                )
                counter_add(notification_emitted, 1)
            except TimeoutError:
                logger.warning("Sink %s timed out, event dropped", type(sink).__name__)
                counter_add(notification_failed, 1)
            except Exception:
                logger.exception("Sink %s failed, event dropped", type(sink).__name__)
                counter_add(notification_failed, 1)

    async def _publish_badge(self, count: int) -> None:
        for sink in list(self._sinks):
            try:
                await asyncio.wait_for(
                    sink.badge(count),
                    timeout=self._config.sink_timeout_sec,
                )
            except TimeoutError:
                logger.warning("Sink %s timed out on badge", type(sink).__name__)
            except Exception:
                logger.exception("Sink %s failed on badge", type(sink).__name__)


def _is_transition(previous: StateEnum | None, state: StateEnum) -> bool:
    if state in _ALERT_STATES:
        return previous != state
    if state == StateEnum.UPCOMING:
        return previous in _ALERT_STATES
    return False
