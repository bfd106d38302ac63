"""AsyncIOBus -- in-process async pub/sub connecting the CRM, queue and automations.

Subscribers of one event run concurrently and publish() waits for all of
them, so a CRM mutation returns only after the automations it triggered have
finished. Events can be appended to daily JSONL audit files.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timezone
from pathlib import Path
from typing import Any, Callable, Coroutine

from core.models.events import Event

logger = logging.getLogger(__name__)

Callback = Callable[[Event], Coroutine[Any, Any, None]]


class AsyncIOBus:
    """In-process async pub/sub event bus with optional JSONL audit logging.

    Usage:
        bus = AsyncIOBus(events_dir=Path("~/.leadpilot/events"))
        bus.subscribe(EventTypes.ENTITY_CHANGED, engine.handle_entity_event)
        await bus.publish(event)
    """

    def __init__(self, events_dir: Path | None = None) -> None:
        self._subscribers: dict[str, list[Callback]] = {}
        self._events_dir = events_dir
        if self._events_dir is not None:
            self._events_dir.mkdir(parents=True, exist_ok=True)

    @property
    def name(self) -> str:
        return "asyncio_bus"

    async def publish(self, event: Event) -> int:
        """Persist the event, deliver it, and return how many subscribers failed."""
        self._persist(event)

        callbacks = [*self._subscribers.get(event.type, []), *self._subscribers.get("*", [])]
        if not callbacks:
            logger.debug("No subscribers for event type: %s", event.type)
            return 0

        logger.debug(
            "Publishing %s to %d subscriber(s) [correlation=%s]",
            event.type,
            len(callbacks),
            event.correlation_id,
        )

        outcomes = await asyncio.gather(
            *(self._safe_invoke(cb, event) for cb in callbacks)
        )
        return outcomes.count(False)

    def subscribe(self, event_type: str, callback: Callback) -> None:
        """Register a callback for events of the given type ("*" for all)."""
        self._subscribers.setdefault(event_type, []).append(callback)
        logger.debug("Subscribed to '%s': %s", event_type, callback)

    def unsubscribe(self, event_type: str, callback: Callback) -> None:
        """Remove a previously registered callback."""
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def subscriber_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(cbs) for cbs in self._subscribers.values())
        return len(self._subscribers.get(event_type, []))

    async def _safe_invoke(self, callback: Callback, event: Event) -> bool:
        try:
            await callback(event)
            return True
        except Exception:
            logger.exception(
                "Error in event handler for %s [correlation=%s]",
                event.type,
                event.correlation_id,
            )
            return False

    def _persist(self, event: Event) -> None:
        # One file per UTC day of the event, not of the wall clock
        if self._events_dir is None:
            return
        day = event.timestamp.astimezone(timezone.utc).date().isoformat()
        path = self._events_dir / f"{day}.jsonl"
        try:
            with path.open("a", encoding="utf-8") as fh:
                fh.write(event.model_dump_json() + "\n")
        except OSError:
            logger.exception("Could not append event %s to %s", event.id, path)
