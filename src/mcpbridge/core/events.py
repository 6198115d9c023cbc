"""
Event bus for connection-scoped fan-out.

Implements a pub/sub pattern used for server notifications and health events.
Each protocol handler and connection manager owns its own bus; there is no
process-wide instance.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

from loguru import logger


@dataclass
class Event:
    """Represents an event in the system."""

    name: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid4()))
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


# Handlers may be plain callables or coroutine functions.
EventHandler = Callable[[Event], Union[Awaitable[None], None]]


class Subscription:
    """Handle returned by EventBus.subscribe; call unsubscribe() to detach."""

    def __init__(self, bus: "EventBus", event_name: str, handler: EventHandler) -> None:
        self._bus = bus
        self.event_name = event_name
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._remove(self)


class EventBus:
    """
    Asynchronous event bus.

    Features:
    - Sync or async handlers
    - Wildcard subscriptions ('*')
    - Bounded event history
    - Handler priority
    """

    def __init__(self, max_history: int = 200):
        self._handlers: Dict[str, List[tuple[int, Subscription]]] = defaultdict(list)
        self._history: List[Event] = []
        self._max_history = max_history
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_name: str, handler: EventHandler, priority: int = 0) -> Subscription:
        """
        Subscribe to an event.

        Args:
            event_name: Event name or '*' for all events
            handler: Function or coroutine function receiving the Event
            priority: Higher priority handlers run first

        Returns:
            Subscription handle
        """
        sub = Subscription(self, event_name, handler)
        self._handlers[event_name].append((priority, sub))
        self._handlers[event_name].sort(key=lambda x: -x[0])
        logger.debug(f"Handler subscribed to '{event_name}'")
        return sub

    def _remove(self, sub: Subscription) -> None:
        self._handlers[sub.event_name] = [
            (p, s) for p, s in self._handlers.get(sub.event_name, []) if s is not sub
        ]

    def handler_count(self, event_name: Optional[str] = None) -> int:
        if event_name is None:
            return sum(len(v) for v in self._handlers.values())
        return len(self._handlers.get(event_name, []))

    async def emit(
        self,
        event_name: str,
        data: Dict[str, Any],
        source: Optional[str] = None,
        wait: bool = False,
    ) -> Event:
        """
        Emit an event to all subscribers.

        Args:
            event_name: Name of the event
            data: Event data payload
            source: Source component name
            wait: If True, wait for all handlers to complete

        Returns:
            The emitted event
        """
        event = Event(name=event_name, data=data, source=source)

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        subs = [s for _, s in self._handlers.get(event_name, [])]
        if event_name != "*":
            subs.extend(s for _, s in self._handlers.get("*", []))

        if not subs:
            return event

        async def run_handler(sub: Subscription) -> None:
            if not sub.active:
                return
            try:
                res = sub.handler(event)
                if asyncio.iscoroutine(res):
                    await res
            except Exception as e:
                logger.error(f"Event handler error for '{event_name}': {e}")

        if wait:
            await asyncio.gather(*[run_handler(s) for s in subs])
        else:
            for sub in subs:
                task = asyncio.create_task(run_handler(sub))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        return event

    def get_history(self, event_name: Optional[str] = None, limit: int = 100) -> List[Event]:
        """Get recent events, optionally filtered by name."""
        events = self._history
        if event_name:
            events = [e for e in events if e.name == event_name]
        return events[-limit:]

    def clear_history(self) -> None:
        self._history.clear()
