"""
Lifecycle event stream.

Every state transition of every run is published here:
- LifecycleEvent: immutable transition record (identity, old/new state, error)
- EventBus: bounded in-memory history, sync subscribers, async streams

Usage:
    bus = EventBus()
    unsubscribe = bus.subscribe(lambda e: print(e.to_dict()))

    async for event in bus.stream():
        ...
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, UTC
from threading import Lock
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .identity import ContainerIdentity

logger = logging.getLogger("robium.events")


@dataclass(frozen=True)
class LifecycleEvent:
    """
    Immutable record of one state transition.

    Attributes:
        identity: The run the transition belongs to
        old_state: State before the transition (None when the record is created)
        new_state: State after the transition
        error: Error text when the transition was caused by a failure
        timestamp: When the transition happened (UTC)
        sequence: Position in the stream (set by the bus)
    """
    identity: ContainerIdentity
    old_state: Optional[str]
    new_state: str
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "sequence": self.sequence,
            "identity": self.identity.to_dict(),
            "old_state": self.old_state,
            "new_state": self.new_state,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class EventBus:
    """
    Append-only, bounded event history with subscriptions.

    Publishing is thread-safe: the lifecycle controller publishes from worker
    threads while async consumers read through :meth:`stream`.
    """

    def __init__(self, max_history: int = 10000):
        self._history: deque[LifecycleEvent] = deque(maxlen=max_history)
        self._subscribers: List[Callable[[LifecycleEvent], None]] = []
        self._lock = Lock()
        self._sequence = 0

    def publish(
        self,
        identity: ContainerIdentity,
        old_state: Optional[str],
        new_state: str,
        error: Optional[str] = None,
    ) -> LifecycleEvent:
        with self._lock:
            self._sequence += 1
            event = LifecycleEvent(
                identity=identity,
                old_state=old_state,
                new_state=new_state,
                error=error,
                sequence=self._sequence,
            )
            self._history.append(event)
            subscribers = list(self._subscribers)

        for handler in subscribers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Event subscriber {handler!r} failed: {e}")
        return event

    def subscribe(self, handler: Callable[[LifecycleEvent], None]) -> Callable[[], None]:
        """
        Subscribe to all events.

        Returns:
            Unsubscribe function
        """
        with self._lock:
            self._subscribers.append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe

    def get_events(
        self,
        identity: Optional[ContainerIdentity] = None,
        since_sequence: Optional[int] = None,
        limit: int = 100,
    ) -> List[LifecycleEvent]:
        with self._lock:
            events = list(self._history)
        if identity is not None:
            events = [e for e in events if e.identity == identity]
        if since_sequence is not None:
            events = [e for e in events if e.sequence > since_sequence]
        return events[-limit:] if limit else events

    async def stream(
        self,
        identity: Optional[ContainerIdentity] = None,
        replay: bool = False,
        max_queue: int = 1000,
    ) -> AsyncIterator[LifecycleEvent]:
        """
        Yield events as they are published.

        Args:
            identity: Only yield events for this run
            replay: Yield buffered history first
            max_queue: Events beyond this backlog are dropped for this consumer
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=max_queue)

        def _offer(event: LifecycleEvent) -> None:
            if queue.full():
                logger.warning(f"Event stream backlog full, dropping event {event.sequence}")
                return
            queue.put_nowait(event)

        def _on_event(event: LifecycleEvent) -> None:
            if identity is None or event.identity == identity:
                loop.call_soon_threadsafe(_offer, event)

        with self._lock:
            backlog = list(self._history) if replay else []
            self._subscribers.append(_on_event)

        try:
            last = 0
            for event in backlog:
                if identity is None or event.identity == identity:
                    last = event.sequence
                    yield event
            while True:
                event = await queue.get()
                if event.sequence <= last:
                    continue
                yield event
        finally:
            with self._lock:
                if _on_event in self._subscribers:
                    self._subscribers.remove(_on_event)
