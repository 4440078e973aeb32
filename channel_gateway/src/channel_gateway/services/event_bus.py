"""
In-process listener bus for channel events.

This is the reference implementation of the event surface a channel
client adapter must offer: listeners are installed with
``on(event_type, listener)``, removed with ``off(event_type, listener)``,
and every ``emit`` awaits each listener registered for that event type.
The gateway itself never instantiates it.  An adapter whose client
library has no listener table of its own embeds one of these and
forwards the library's callbacks to :meth:`ChannelEventBus.emit`; the
test suite's fake client does exactly that.  The subscription registry
only relies on ``on``/``off``, so any adapter offering the same two calls
works in place of this class.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Awaitable[None]]


class ChannelEventBus:
    """Listener table keyed by event type.

    A failing listener is logged and does not prevent the remaining
    listeners from receiving the event.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def on(self, event_type: str, listener: Listener) -> None:
        """Install ``listener`` for ``event_type``."""
        self._listeners[event_type].append(listener)

    def off(self, event_type: str, listener: Listener) -> bool:
        """Remove ``listener``; returns ``False`` if it was not installed."""
        listeners = self._listeners.get(event_type)
        if not listeners or listener not in listeners:
            return False
        listeners.remove(listener)
        if not listeners:
            del self._listeners[event_type]
        return True

    def listener_count(self, event_type: Optional[str] = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, ()))
        return sum(len(listeners) for listeners in self._listeners.values())

    async def emit(self, event_type: str, data: Any) -> int:
        """Deliver ``data`` to every listener of ``event_type``.

        Returns the number of listeners invoked.
        """
        listeners = list(self._listeners.get(event_type, ()))
        for listener in listeners:
            try:
                await listener(data)
            except Exception:
                logger.exception("Listener for %s raised", event_type)
        return len(listeners)
