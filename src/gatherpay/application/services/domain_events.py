# src/gatherpay/application/services/domain_events.py
"""
In-process publish/subscribe for pipeline events.

Events are published after the owning transaction has committed. Subscribers
(notifications, chat-room creation, ...) live outside this package; a
failing subscriber is logged and never rolls anything back.
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

log = logging.getLogger(__name__)

PARTICIPATION_CONFIRMED = "participation_confirmed"
MATCH_FINALIZED = "match_finalized"
ESCROW_RELEASED = "escrow_released"
REFUND_PROCESSED = "refund_processed"


class DomainEventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Callable[[Dict[str, Any]], Any]]] = defaultdict(list)

    def subscribe(self, name: str, handler: Callable[[Dict[str, Any]], Any]) -> None:
        self._handlers[name].append(handler)

    async def publish(self, name: str, payload: Dict[str, Any]) -> None:
        log.debug(f"Publishing {name}: {payload}")
        for handler in list(self._handlers.get(name, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception(f"Subscriber {getattr(handler, '__name__', handler)!r} failed for {name}")
