"""
In-process event bus for subscription domain events.

WHAT: Publish/subscribe by event name, with sync or async handlers.

WHY: Organization and team domains react to subscription changes
(plan changed, payment failed, expired) without the engine knowing
about them. The bus is constructed explicitly by the application
factory and passed to every service, so tests get an isolated bus.

HOW:
- publish() awaits handlers in subscription order
- a failing handler is logged and counted, it never reaches the publisher
- "*" subscribes a handler to every event
"""

import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Tuple, Union

from subscription_engine.models.events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]

ALL_EVENTS = "*"


class EventBus:
    """
    Dependency-injected publish/subscribe bus.

    Handlers receive (event_name, payload). Payloads are JSON-safe dicts
    as produced by DomainEvent.to_payload().
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Tuple[str, EventHandler]]] = {}
        self.metrics = {
            "events_published": 0,
            "handlers_failed": 0,
        }

    def subscribe(self, event_name: str, handler: EventHandler) -> str:
        """
        Register a handler for one event name, or ALL_EVENTS.

        Returns:
            Handler id for unsubscribe()
        """
        handler_id = uuid.uuid4().hex
        self._handlers.setdefault(event_name, []).append((handler_id, handler))
        logger.debug(f"Subscribed handler {handler_id} to {event_name}")
        return handler_id

    def unsubscribe(self, event_name: str, handler_id: str) -> bool:
        handlers = self._handlers.get(event_name, [])
        remaining = [(hid, h) for hid, h in handlers if hid != handler_id]
        self._handlers[event_name] = remaining
        return len(remaining) != len(handlers)

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        """
        Deliver an event to every matching handler.

        Handler exceptions are logged with the event name and swallowed,
        so a broken consumer cannot fail a webhook delivery or a job.
        """
        self.metrics["events_published"] += 1
        handlers = self._handlers.get(event_name, []) + self._handlers.get(ALL_EVENTS, [])

        for handler_id, handler in handlers:
            try:
                result = handler(event_name, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.metrics["handlers_failed"] += 1
                logger.error(
                    f"Event handler {handler_id} failed for {event_name}: {e}",
                    extra={"event_type": event_name, "handler_id": handler_id},
                    exc_info=True,
                )

    async def publish_event(self, event: DomainEvent) -> None:
        await self.publish(event.name, event.to_payload())

    async def publish_events(self, events: Iterable[DomainEvent]) -> None:
        """Publish drained aggregate events, oldest first."""
        for event in events:
            await self.publish_event(event)


class RecordingEventBus(EventBus):
    """
    Event bus that also keeps every published event.

    WHY: Tests assert on what was published, and local runs can
    inspect recent events without wiring a consumer.
    """

    def __init__(self) -> None:
        super().__init__()
        self.published: List[Tuple[str, Dict[str, Any]]] = []

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        self.published.append((event_name, payload))
        await super().publish(event_name, payload)

    def names(self) -> List[str]:
        """Names of published events, in order."""
        return [name for name, _ in self.published]

    def of(self, event_name: str) -> List[Dict[str, Any]]:
        """Payloads published under one name."""
        return [payload for name, payload in self.published if name == event_name]

    def clear(self) -> None:
        self.published.clear()
