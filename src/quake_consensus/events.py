"""Small publish/subscribe bus for engine notifications."""

from __future__ import annotations

import logging
from enum import Enum
from threading import Lock
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)


class EngineEvent(str, Enum):
    VERIFICATION_COMPLETE = "verificationComplete"   # payload: VerificationResult
    DISCREPANCY_DETECTED = "discrepancyDetected"     # payload: Discrepancy
    CONSENSUS_UPDATE = "consensusUpdate"             # payload: ConsensusSummary
    NO_DATA_SOURCES = "noDataSources"                # payload: SystemStatus


Handler = Callable[[Any], None]
EventName = Union[EngineEvent, str]


class EventBus:
    """Event name → ordered list of handlers.

    Handlers run synchronously in subscription order; an exception in one is
    logged and does not stop delivery to the rest.
    """

    def __init__(self):
        self._lock = Lock()
        self._handlers: dict[EngineEvent, list[Handler]] = {}

    def subscribe(self, event: EventName, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it."""
        name = EngineEvent(event)
        with self._lock:
            self._handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(name, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, event: EventName, payload: Any) -> int:
        """Deliver payload to every handler; returns how many succeeded."""
        name = EngineEvent(event)
        with self._lock:
            handlers = list(self._handlers.get(name, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception("Error in %s handler %r", name.value, handler)
        return delivered

    def handler_count(self, event: EventName) -> int:
        with self._lock:
            return len(self._handlers.get(EngineEvent(event), []))
