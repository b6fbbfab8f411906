"""
Event Registry

In-memory publish/subscribe for view-model events.

DELIVERY CONTRACT:
==================
- Synchronous: emit() returns after every handler ran
- Ordered: handlers run in subscription order
- No buffering, no async dispatch
- A failing handler does not stop the ones after it
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import itertools
import logging

from .contracts import CommentEvent, ViewModelEvent


logger = logging.getLogger(__name__)

Handler = Callable[[CommentEvent], None]
FailureHook = Callable[[CommentEvent, Handler, Exception], None]


@dataclass
class Subscription:
    """Token returned by subscribe(); call unsubscribe() to detach."""
    event_type: ViewModelEvent
    token: int
    _registry: Optional[EventRegistry]

    @property
    def active(self) -> bool:
        return self._registry is not None

    def unsubscribe(self) -> None:
        """Detach the handler. Calling it again is harmless."""
        if self._registry is not None:
            self._registry._remove(self.event_type, self.token)
            self._registry = None


class EventRegistry:
    """Handler table keyed by event type."""

    def __init__(self, on_handler_error: Optional[FailureHook] = None):
        self._handlers: Dict[ViewModelEvent, List[Tuple[int, Handler]]] = {
            event_type: [] for event_type in ViewModelEvent
        }
        self._tokens = itertools.count(1)
        self._on_handler_error = on_handler_error

    def subscribe(self, event_type: ViewModelEvent, handler: Handler) -> Subscription:
        event_type = ViewModelEvent(event_type)
        token = next(self._tokens)
        self._handlers[event_type].append((token, handler))
        return Subscription(event_type=event_type, token=token, _registry=self)

    def emit(self, event: CommentEvent) -> None:
        # Copy so handlers may (un)subscribe while being called
        for _, handler in list(self._handlers[event.event_type]):
            try:
                handler(event)
            except Exception as exc:
                logger.warning(
                    "Handler %r failed for %s on %s: %s",
                    handler, event.event_type.value, event.comment_id, exc,
                )
                if self._on_handler_error is not None:
                    self._on_handler_error(event, handler, exc)

    def handler_count(self, event_type: ViewModelEvent) -> int:
        return len(self._handlers[event_type])

    def _remove(self, event_type: ViewModelEvent, token: int) -> None:
        self._handlers[event_type] = [
            (t, h) for t, h in self._handlers[event_type] if t != token
        ]
