from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from .models import Role, SessionSnapshot, StateEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One subscriber's ordered, bounded event buffer.

    ``send`` never blocks. When the buffer is full the subscription is closed
    and its backlog dropped; the client has to subscribe again and will start
    from a fresh snapshot.
    """

    def __init__(self, role: Role, player_id: Optional[str] = None, buffer_size: int = 100):
        self.id = uuid.uuid4().hex
        self.role = role
        self.player_id = player_id
        self.closed = False
        self.last_seq = -1
        self._queue: asyncio.Queue[Optional[StateEvent]] = asyncio.Queue(maxsize=buffer_size)

    def send(self, event: StateEvent) -> bool:
        if self.closed:
            return False
        if event.seq <= self.last_seq:
            return True
        try:
            self._queue.put_nowait(event.for_role(self.role, self.player_id))
        except asyncio.QueueFull:
            logger.warning("Subscriber %s (%s) fell behind; disconnecting", self.id, self.role.value)
            self.close()
            return False
        self.last_seq = event.seq
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self, timeout: Optional[float] = None) -> Optional[StateEvent]:
        """Next event, or ``None`` once closed. Raises ``TimeoutError``."""
        if self.closed and self._queue.empty():
            return None
        if timeout is not None and timeout <= 0:
            # wait_for(..., 0) cancels before the getter runs on 3.10 and 3.11
            if self._queue.empty():
                raise asyncio.TimeoutError
            return self._queue.get_nowait()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def drain(self) -> List[StateEvent]:
        events: List[StateEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is None:
                break
            events.append(event)
        return events

    def __aiter__(self):
        return self

    async def __anext__(self) -> StateEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class Broadcaster:
    def __init__(self, buffer_size: int = 100):
        self.buffer_size = buffer_size
        self._subscriptions: Dict[str, Subscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        role: Role,
        snapshot: SessionSnapshot,
        player_id: Optional[str] = None,
    ) -> Subscription:
        """Register a subscriber whose first event is the given snapshot."""
        sub = Subscription(role, player_id, self.buffer_size)
        sub.send(
            StateEvent(
                seq=snapshot.version,
                type="snapshot",
                phase=snapshot.phase,
                snapshot=snapshot,
                submissions=snapshot.submissions,
            )
        )
        self._subscriptions[sub.id] = sub
        logger.debug("Subscriber %s joined as %s", sub.id, role.value)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if self._subscriptions.pop(sub.id, None) is not None and not sub.closed:
            sub.close()

    def publish(self, event: StateEvent) -> None:
        for sub in list(self._subscriptions.values()):
            try:
                delivered = sub.send(event)
            except Exception:
                logger.exception("Delivery to subscriber %s failed", sub.id)
                delivered = False
                sub.close()
            if not delivered:
                self._subscriptions.pop(sub.id, None)
