from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from sqlmodel import Session

from .models import Notification, NotificationType

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DomainEvent:
    """A state transition worth telling participants about."""

    type: NotificationType
    recipients: tuple[str, ...]
    message: str
    related_request_id: Optional[str] = None


EventHandler = Callable[[Session, DomainEvent], None]


def write_notifications(session: Session, event: DomainEvent) -> None:
    """Stage one notification row per recipient in the caller's session.

    Nothing is committed here, so the rows share the fate of the transaction
    that produced the event.
    """

    for user_id in event.recipients:
        session.add(
            Notification(
                user_id=user_id,
                type=event.type.value,
                message=event.message,
                related_request_id=event.related_request_id,
            )
        )


class EventBus:
    """Fans domain events out to subscribers inside the emitting transaction."""

    def __init__(self, handlers: Optional[Sequence[EventHandler]] = None) -> None:
        self._handlers: List[EventHandler] = list(handlers) if handlers is not None else [write_notifications]
        self._event_log: list[dict] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def emit(self, session: Session, event: DomainEvent) -> None:
        for handler in self._handlers:
            handler(session, event)
        self._event_log.append(
            {
                "type": event.type.value,
                "timestamp": time.time(),
                "recipients": list(event.recipients),
                "related_request_id": event.related_request_id,
            }
        )
        if len(self._event_log) > 1000:
            self._event_log.pop(0)
        logger.debug("Emitted %s to %s", event.type.value, ", ".join(event.recipients))

    def recent_events(self, limit: int = 100) -> list[dict]:
        if limit <= 0:
            return []
        return list(self._event_log[-limit:])
