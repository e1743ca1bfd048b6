# coinvest/events.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BidCreated:
    bid_number: str
    reference_number: str
    user_email: str
    lot_number: str
    seller_bank: str
    amount: Decimal
    holding_period: int
    created_at: datetime


class EventBus:
    """In-process pub/sub. Events are published only after their transaction commits."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[Type, List[Callable]] = {}

    def subscribe(self, event_type: Type, handler: Callable) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type, handler: Callable) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # the publishing transaction is already committed
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)


bus = EventBus()
