import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Type

from charmcart.events.types import EVENT_TYPES

log = logging.getLogger(__name__)

Handler = Callable[[object], None]


class Subscription:
    """Handle returned by EventChannel.subscribe; call unsubscribe() to detach."""

    def __init__(self, channel: "EventChannel", event_type: Type, handler: Handler):
        self._channel = channel
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self.event_type, self.handler)
            self.active = False


class EventChannel:
    """
    In-process publish/subscribe channel keyed by event payload type.

    Handlers run synchronously on the publisher's thread, in subscription
    order. A failing handler is logged and skipped; it never breaks the
    publisher or the remaining handlers.
    """

    def __init__(self, name: str = "cart"):
        self.name = name
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type, handler: Handler) -> Subscription:
        if event_type not in EVENT_TYPES:
            raise TypeError(f"Unknown event type: {event_type!r}")
        with self._lock:
            self._handlers[event_type].append(handler)
        return Subscription(self, event_type, handler)

    def subscribe_many(self, event_types: Iterable[Type], handler: Handler) -> List[Subscription]:
        return [self.subscribe(t, handler) for t in event_types]

    def publish(self, event) -> None:
        event_type = type(event)
        if event_type not in EVENT_TYPES:
            raise TypeError(f"Unknown event type: {event_type.__name__}")
        with self._lock:
            handlers = list(self._handlers.get(event_type, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                log.exception(
                    "[%s] subscriber %r failed for %s", self.name, handler, event_type.__name__
                )

    def subscriber_count(self, event_type: Type) -> int:
        with self._lock:
            return len(self._handlers.get(event_type, ()))

    def _remove(self, event_type: Type, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)
