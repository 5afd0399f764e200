"""
Emitter: in-process event distribution for orders and account sessions.

Every Order and every AccountSession owns one Emitter. Listeners subscribe to
a named event ("status-change", "trade", "execute", "tick", ...) or to all
events ("*"), and get back a listener id for removal.

Features:
- Synchronous fan-out: emit() returns once every sync listener has run
- Async listeners are scheduled as tasks, so a slow consumer never stalls
  the caller (push-event dispatch for order A never waits on order B)
- Priority-ordered listeners
- Error isolation (one listener failure doesn't stop others)
- Bounded event history for debugging
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

log = logging.getLogger("binance_plugin")

ALL_EVENTS = "*"


@dataclass
class Event:
    """
    Event container handed to every listener.

    - name: event name ("status-change", "trade", ...)
    - data: event-specific payload
    - timestamp_ms: when the event was emitted
    - source: emitter owner description (optional)
    """
    name: str
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.name}, ts={self.timestamp_ms}, source={self.source})"


Listener = Callable[[Event], Any]


@dataclass
class Subscription:
    """Internal subscription record."""
    id: str
    event: str
    handler: Listener
    priority: int = 0  # Higher = called first
    name: Optional[str] = None


class Emitter:
    """
    Usage:
        emitter = Emitter(source="order:123")

        uid = emitter.on("execute", handle_execute)
        emitter.emit("execute", order=order)
        emitter.remove_listener(uid)
    """

    DEFAULT_HISTORY_SIZE = 0

    def __init__(self, source: Optional[str] = None, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self.source = source
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._by_id: Dict[str, Subscription] = {}
        self._history_size = history_size
        self._history: List[Event] = []
        self._tasks: Set[asyncio.Task] = set()
        self._stats = {
            "events_emitted": 0,
            "handler_errors": 0,
            "async_dispatched": 0,
        }

    # -------------------------------------------------------------------------
    # Subscription Management
    # -------------------------------------------------------------------------

    def on(self, event: str, handler: Listener, priority: int = 0,
           name: Optional[str] = None) -> str:
        """
        Subscribe to a named event (or "*" for every event).

        Returns:
            Listener id for remove_listener()
        """
        sub = Subscription(
            id=str(uuid.uuid4()),
            event=event,
            handler=handler,
            priority=priority,
            name=name,
        )
        subs = self._subscribers.setdefault(event, [])

        # Insert sorted by priority (descending), stable for equal priorities
        insert_idx = len(subs)
        for i, existing in enumerate(subs):
            if existing.priority < priority:
                insert_idx = i
                break
        subs.insert(insert_idx, sub)
        self._by_id[sub.id] = sub
        return sub.id

    def remove_listener(self, listener_id: str) -> bool:
        """Remove a subscription by id. Returns False if unknown."""
        sub = self._by_id.pop(listener_id, None)
        if sub is None:
            return False
        subs = self._subscribers.get(sub.event, [])
        if sub in subs:
            subs.remove(sub)
        return True

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is None:
            return len(self._by_id)
        return len(self._subscribers.get(event, []))

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    def emit(self, name: str, **data: Any) -> Event:
        """
        Emit an event to global listeners then to named listeners.

        Listeners removed while the event is being delivered (e.g. a resolver
        unsubscribing itself) are skipped for the remainder of the delivery.
        """
        event = Event(name=name, data=data, source=self.source)
        self._stats["events_emitted"] += 1

        if self._history_size > 0:
            self._history.append(event)
            if len(self._history) > self._history_size:
                self._history.pop(0)

        handlers: List[Subscription] = []
        handlers.extend(self._subscribers.get(ALL_EVENTS, []))
        handlers.extend(self._subscribers.get(name, []))

        for sub in handlers:
            if sub.id not in self._by_id:
                continue
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, sub, event)
            except Exception as e:
                self._stats["handler_errors"] += 1
                log.warning(
                    "emitter_handler_error source=%s event=%s handler=%s err=%s",
                    self.source, name, sub.name or getattr(sub.handler, "__name__", "unknown"), e,
                )
        return event

    def _schedule(self, awaitable: Any, sub: Subscription, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: nothing can drive the coroutine
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._stats["handler_errors"] += 1
            log.warning("emitter_no_loop source=%s event=%s", self.source, event.name)
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._stats["async_dispatched"] += 1
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._stats["handler_errors"] += 1
                log.warning(
                    "emitter_async_handler_error source=%s event=%s handler=%s err=%s",
                    self.source, event.name, sub.name or "unknown", exc,
                )

        task.add_done_callback(_done)

    async def drain(self, timeout: float = 5.0) -> int:
        """Wait for scheduled async listeners. Returns how many were pending."""
        pending = list(self._tasks)
        if pending:
            await asyncio.wait(pending, timeout=timeout)
        return len(pending)

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    def get_history(self, name: Optional[str] = None, limit: int = 100) -> List[Event]:
        events = self._history
        if name:
            events = [e for e in events if e.name == name]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "listeners": len(self._by_id),
            "pending_tasks": len(self._tasks),
        }

    def clear(self) -> None:
        """Remove every listener (for teardown/testing)."""
        self._subscribers.clear()
        self._by_id.clear()
        self._history.clear()
