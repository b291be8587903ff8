"""Online/offline signal shared by the repositories and the sync coordinator."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None] | None]


class ConnectivityMonitor:
    """Tracks whether the device is online and notifies listeners of changes.

    Listeners are called only on transitions, in subscription order, and
    awaited when they are coroutines.  A failing listener is logged and does
    not prevent the others from running.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register *listener* and return a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_online(self, online: bool) -> None:
        """Record the current connectivity and notify on a transition."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")

        for listener in list(self._listeners):
            try:
                outcome = listener(online)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)
