# app/client/events.py

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List

from loguru import logger


class InvalidationTopic(str, Enum):
    Marksheets = "marksheets"
    Notifications = "notifications"
    Leaves = "leaves"
    StaffApprovals = "staff_approvals"


@dataclass(frozen=True)
class InvalidationEvent:
    topic: InvalidationTopic
    # "PATCH /api/leaves/<id>" or "push:leave_approval"
    source: str


Handler = Callable[[InvalidationEvent], None]


class EventBus:
    """In-process pub/sub between screens that share no other wiring."""

    def __init__(self):
        self._handlers: Dict[InvalidationTopic, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: InvalidationTopic, handler: Handler) -> Callable[[], None]:
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[topic].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: InvalidationEvent) -> int:
        delivered = 0
        for handler in list(self._handlers.get(event.topic, ())):
            try:
                handler(event)
                delivered += 1
            except Exception:
                # one broken listener must not starve the others
                logger.exception(f"Invalidation handler failed for {event.topic.value}")
        return delivered

    def subscriber_count(self, topic: InvalidationTopic) -> int:
        return len(self._handlers.get(topic, ()))
