"""
OrderResolver: awaitable handle that settles on the first of a set of order events.

    resolver = OrderResolver(order, events=["execute", "reject"])
    order = await resolver

Settles exactly once. On settling it removes every listener it installed, so
later events reach nobody through it. An empty event set settles at once.
There is no built-in timeout; wrap in asyncio.wait_for if one is needed.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Generator, List, Optional, Sequence, Tuple

from binance_plugin.core.emitter import Event

if TYPE_CHECKING:
    from binance_plugin.execution.order_state_machine import Order

DEFAULT_RESOLVER_EVENTS: Tuple[str, ...] = ("reject", "pending", "cancel", "expire", "execute")


class OrderResolver:
    def __init__(self, order: "Order", events: Optional[Sequence[str]] = None) -> None:
        self._order = order
        self._events: Tuple[str, ...] = tuple(DEFAULT_RESOLVER_EVENTS if events is None else events)
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._listener_ids: List[str] = []
        self.settled_by: Optional[str] = None

        if not self._events:
            self._settle(None)
            return
        for name in self._events:
            self._listener_ids.append(order.on(name, self._on_event))

    @property
    def order(self) -> "Order":
        return self._order

    @property
    def events(self) -> Tuple[str, ...]:
        return self._events

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> "Order":
        return self._future.result()

    def _on_event(self, event: Event) -> None:
        self._settle(event.name)

    def _settle(self, event_name: Optional[str]) -> None:
        if self._future.done():
            return
        self._detach()
        self.settled_by = event_name
        self._future.set_result(self._order)

    def _detach(self) -> None:
        for listener_id in self._listener_ids:
            self._order.remove_listener(listener_id)
        self._listener_ids.clear()

    def cancel(self) -> bool:
        """Stop waiting. Listeners are removed; awaiting raises CancelledError."""
        self._detach()
        return self._future.cancel()

    def __await__(self) -> Generator[Any, None, "Order"]:
        return self._future.__await__()
