"""Event router: canonical event name -> lifecycle synchronizer handler.

The dispatch table is built once and checked for exhaustiveness at
construction, so adding an ``EventName`` without a handler fails at startup
rather than silently dropping events. ``UNKNOWN`` is the only name routed to
the ignore path.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from invoice_sync.lifecycle.models import ApplyResult
from invoice_sync.lifecycle.synchronizer import LifecycleSynchronizer
from invoice_sync.webhooks.models import CanonicalEvent, EventName

logger = logging.getLogger(__name__)


class EventRouter:
    """Dispatches canonical events to the synchronizer."""

    def __init__(self, synchronizer: LifecycleSynchronizer) -> None:
        self._synchronizer = synchronizer
        self._routes: dict[EventName, Callable[[CanonicalEvent], ApplyResult]] = dict(
            synchronizer.handlers()
        )
        missing = [
            name.value
            for name in EventName
            if name is not EventName.UNKNOWN and name not in self._routes
        ]
        if missing:
            raise ValueError(f"No handler registered for events: {missing}")

    @property
    def synchronizer(self) -> LifecycleSynchronizer:
        return self._synchronizer

    def route(self, event: CanonicalEvent) -> ApplyResult:
        """Hand *event* to its handler. Handler exceptions propagate."""
        handler = self._routes.get(event.event_name)
        if handler is None:
            return self._synchronizer.record_ignored(event)
        return handler(event)

    def route_all(self, events: Iterable[CanonicalEvent]) -> list[ApplyResult]:
        """Route events in the given order; stops at the first exception."""
        return [self.route(event) for event in events]
