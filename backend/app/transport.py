from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from .events import Subscription
from .game import GameController
from .models import Role, StateEvent

logger = logging.getLogger(__name__)


class UnknownConnection(KeyError):
    pass


class ConnectionRegistry:
    """Subscriber handles for clients that long-poll over plain HTTP."""

    def __init__(self, controller: GameController, idle_timeout: float = 120.0):
        self._controller = controller
        self._idle_timeout = idle_timeout
        self._connections: Dict[str, Tuple[Subscription, float]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def accept_connection(self, role: Role, player_hint: Optional[str] = None) -> str:
        self.prune()
        sub = self._controller.subscribe(role, player_hint)
        self._connections[sub.id] = (sub, time.monotonic())
        return sub.id

    def send(self, handle: str, event: StateEvent) -> bool:
        sub, _ = self._lookup(handle)
        return sub.send(event)

    async def poll(self, handle: str, timeout: float) -> List[StateEvent]:
        """Wait up to ``timeout`` for events and return everything buffered.

        Raises ``UnknownConnection`` when the handle is gone or was dropped
        for falling behind; the client must connect again.
        """
        sub, _ = self._lookup(handle)
        self._connections[handle] = (sub, time.monotonic())
        try:
            first = await sub.get(timeout)
        except asyncio.TimeoutError:
            return []
        if first is None:
            self.close(handle)
            raise UnknownConnection(handle)
        return [first, *sub.drain()]

    def close(self, handle: str) -> None:
        entry = self._connections.pop(handle, None)
        if entry is not None:
            self._controller.unsubscribe(entry[0])

    def prune(self) -> None:
        cutoff = time.monotonic() - self._idle_timeout
        stale = [h for h, (sub, seen) in self._connections.items() if sub.closed or seen < cutoff]
        for handle in stale:
            logger.info("Dropping idle connection %s", handle)
            self.close(handle)

    def _lookup(self, handle: str) -> Tuple[Subscription, float]:
        entry = self._connections.get(handle)
        if entry is None:
            raise UnknownConnection(handle)
        return entry
