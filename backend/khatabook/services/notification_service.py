# Overview: Service-layer operations for notifications; decides nothing, only routes order events to a transport.

"""
Order Event Notifier

Services decide WHAT to emit and to WHOM; the transport (socket registry,
push tokens) is an external collaborator injected per application.

Delivery rules:
- Events are queued in an Outbox during a unit of work and published only
  after the database commit. A rolled-back operation emits nothing.
- At-most-once, fire-and-forget. Transport failures are logged and
  swallowed; they never roll back or fail the state change that produced them.
- Recipients are de-duplicated and None ids are dropped.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from flask import current_app

logger = logging.getLogger("khatabook.notifications")

EXTENSION_KEY = "event_notifier"


class NotificationTransport(Protocol):
    def emit(self, event_type: str, recipient_user_ids: list[str], payload: dict) -> None:
        ...


class LoggingTransport:
    """Default transport: writes each event to the log."""

    def emit(self, event_type: str, recipient_user_ids: list[str], payload: dict) -> None:
        logger.info("event %s -> %s: %s", event_type, ",".join(recipient_user_ids), payload)


class InMemoryTransport:
    """
    Keeps the most recent events in process memory.

    Useful for local development and tests; not shared across workers.
    """

    def __init__(self, maxlen: int = 1000):
        self.events: deque[dict] = deque(maxlen=maxlen)

    def emit(self, event_type: str, recipient_user_ids: list[str], payload: dict) -> None:
        self.events.append({
            "type": event_type,
            "recipients": list(recipient_user_ids),
            "payload": dict(payload),
        })

    def for_user(self, user_id: str) -> list[dict]:
        return [e for e in self.events if user_id in e["recipients"]]

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]

    def clear(self) -> None:
        self.events.clear()


TRANSPORTS = {
    "log": LoggingTransport,
    "memory": InMemoryTransport,
}


class EventNotifier:
    """Flask extension holding the per-application notification transport."""

    def __init__(self, app=None, transport: NotificationTransport | None = None):
        if app is not None:
            self.init_app(app, transport)

    def init_app(self, app, transport: NotificationTransport | None = None) -> None:
        if transport is None:
            name = app.config.get("NOTIFICATION_TRANSPORT", "log")
            if name not in TRANSPORTS:
                raise ValueError(f"Unknown NOTIFICATION_TRANSPORT '{name}'. Must be one of: {', '.join(TRANSPORTS)}")
            transport = TRANSPORTS[name]()
        app.extensions[EXTENSION_KEY] = transport

    @property
    def transport(self) -> NotificationTransport:
        return current_app.extensions[EXTENSION_KEY]

    def set_transport(self, transport: NotificationTransport) -> None:
        current_app.extensions[EXTENSION_KEY] = transport

    def emit(self, event_type: str, recipients: Iterable[str | None], payload: dict) -> bool:
        """Deliver one event. Returns False if the transport failed (never raises)."""
        recipient_ids = _unique_recipients(recipients)
        if not recipient_ids:
            logger.debug(f"Dropped {event_type}: no recipients")
            return False

        try:
            self.transport.emit(event_type, recipient_ids, payload)
        except Exception as exc:
            logger.error(
                f"Notification transport failed for {event_type} "
                f"(order: {payload.get('order_id')}): {exc}",
                exc_info=True,
            )
            return False

        logger.debug(f"Dispatched {event_type} to {len(recipient_ids)} recipient(s)")
        return True


def _unique_recipients(recipients: Iterable[str | None]) -> list[str]:
    seen: list[str] = []
    for user_id in recipients:
        if user_id and user_id not in seen:
            seen.append(user_id)
    return seen


@dataclass
class PendingEvent:
    event_type: str
    recipients: list[str | None]
    payload: dict


@dataclass
class Outbox:
    """Events produced by one unit of work, published after commit."""

    events: list[PendingEvent] = field(default_factory=list)

    def add(self, event_type: str, recipients: Iterable[str | None], payload: dict) -> None:
        self.events.append(PendingEvent(event_type, list(recipients), payload))

    def publish(self) -> int:
        from ..extensions import notifier

        delivered = 0
        for event in self.events:
            if notifier.emit(event.event_type, event.recipients, event.payload):
                delivered += 1
        self.events = []
        return delivered
