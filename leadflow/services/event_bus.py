"""Typed publish/subscribe channel for lead changes.

Each EventTag has exactly one payload type. Handlers are called in
subscription order; a failing handler is logged and the rest still run.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from leadflow.logging_config import get_logger

logger = get_logger("event_bus")


class EventTag(str, Enum):
    LEAD_STAGE_CHANGED = "lead-stage-changed"
    LEAD_NAME_CHANGED = "lead-name-changed"
    FORCE_RESYNC = "force-resync"


@dataclass(frozen=True)
class LeadStageChanged:
    tenant_id: str
    lead_id: str
    previous_stage: Optional[str]
    new_stage: str


@dataclass(frozen=True)
class LeadNameChanged:
    lead_id: str
    name: str
    stage: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    origin: Optional[str] = None


@dataclass(frozen=True)
class ForceResync:
    reason: Optional[str] = None


Event = Union[LeadStageChanged, LeadNameChanged, ForceResync]

EVENT_PAYLOADS: dict[EventTag, type] = {
    EventTag.LEAD_STAGE_CHANGED: LeadStageChanged,
    EventTag.LEAD_NAME_CHANGED: LeadNameChanged,
    EventTag.FORCE_RESYNC: ForceResync,
}

TAG_BY_PAYLOAD = {payload: tag for tag, payload in EVENT_PAYLOADS.items()}

Handler = Callable[[Any], Any]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[EventTag, list[Handler]] = {tag: [] for tag in EventTag}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, tag: EventTag, handler: Handler) -> Callable[[], None]:
        """Subscribe to one tag. Returns an unsubscribe function."""
        self._handlers[tag].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[tag]:
                self._handlers[tag].remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        tag = TAG_BY_PAYLOAD.get(type(event))
        if tag is None:
            raise TypeError(f"Unsupported event payload: {type(event).__name__}")

        for handler in list(self._handlers[tag]):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    self._schedule(tag, result)
            except Exception as exc:
                logger.error(
                    f"Event handler failed for {tag.value}",
                    extra={"context": {"tag": tag.value, "error": str(exc)}},
                )

    def _schedule(self, tag: EventTag, coro: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(
                f"Async handler for {tag.value} dropped: no running event loop",
                extra={"context": {"tag": tag.value}},
            )
            return

        task = loop.create_task(coro)
        self._tasks.add(task)

        def _log_failure(done: asyncio.Task) -> None:
            self._tasks.discard(done)
            if not done.cancelled() and done.exception() is not None:
                logger.error(
                    f"Async event handler failed for {tag.value}",
                    extra={"context": {"tag": tag.value, "error": str(done.exception())}},
                )

        task.add_done_callback(_log_failure)

    def subscriber_count(self, tag: EventTag) -> int:
        return len(self._handlers[tag])
