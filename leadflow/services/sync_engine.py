"""Keeps the chat inbox in step with lead changes made on the sales funnel.

Name and stage updates are queued per lead and applied to the chat view
immediately, then again on every drain tick. Both pending sets are mirrored
to shared keys so other surfaces (browser tabs, workers) replay the same
changes. Mirror writes to a store that does I/O run in the threadpool, in
the order they were queued.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError

from leadflow.logging_config import get_logger
from leadflow.schemas.sync import PendingStageUpdate, PendingSyncUpdate
from leadflow.services.event_bus import EventBus, EventTag, ForceResync, LeadNameChanged, LeadStageChanged
from leadflow.services.kv_store import KeyChange, KeyValueStore
from leadflow.services.lead_ids import chat_id_for_lead, is_valid_display_name, normalize_lead_id
from leadflow.services.timers import Clock, RepeatingTimer, utc_now

logger = get_logger("sync_engine")

SYNC_UPDATES_KEY = "lead-sync-updates"
STAGE_UPDATES_KEY = "lead-stage-updates"

LEAD_CACHE_MAX_ENTRIES = 5000


class ChatViewModel(ABC):
    """The live chat surface the engine writes into."""

    @abstractmethod
    def rename_chat(self, chat_id: str, name: str) -> None:
        pass

    @abstractmethod
    def merge_metadata(self, chat_id: str, metadata: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def trigger_update(self, at: datetime) -> None:
        pass

    @abstractmethod
    async def refresh_chat_list(self) -> None:
        pass


class InMemoryChatViewModel(ChatViewModel):
    def __init__(self) -> None:
        self.chats: dict[str, dict[str, Any]] = {}
        self.last_trigger: Optional[datetime] = None
        self.trigger_count = 0
        self.refresh_count = 0

    def _chat(self, chat_id: str) -> dict[str, Any]:
        return self.chats.setdefault(chat_id, {"name": None, "metadata": {}})

    def rename_chat(self, chat_id: str, name: str) -> None:
        self._chat(chat_id)["name"] = name

    def merge_metadata(self, chat_id: str, metadata: dict[str, Any]) -> None:
        self._chat(chat_id)["metadata"].update(metadata)

    def trigger_update(self, at: datetime) -> None:
        self.last_trigger = at
        self.trigger_count += 1

    async def refresh_chat_list(self) -> None:
        self.refresh_count += 1


@dataclass
class CachedLead:
    name: Optional[str] = None
    stage: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    updated_at: Optional[datetime] = None


class LeadCache:
    """Latest known display data per lead, shared by the funnel and chat views.

    Holds at most ``max_entries`` leads; the least recently updated one is
    dropped first.
    """

    def __init__(self, max_entries: int = LEAD_CACHE_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._leads: OrderedDict[str, CachedLead] = OrderedDict()

    def update(self, lead_id: str, updated_at: datetime, **fields: Any) -> CachedLead:
        entry = self._leads.get(lead_id)
        if entry is None:
            entry = self._leads[lead_id] = CachedLead()
        else:
            self._leads.move_to_end(lead_id)
        for field_name, value in fields.items():
            if value is not None:
                setattr(entry, field_name, value)
        entry.updated_at = updated_at

        while len(self._leads) > self.max_entries:
            self._leads.popitem(last=False)
        return entry

    def get(self, lead_id: str) -> Optional[CachedLead]:
        return self._leads.get(lead_id)

    def items(self) -> list[tuple[str, CachedLead]]:
        return list(self._leads.items())

    def clear(self) -> None:
        self._leads.clear()

    def __len__(self) -> int:
        return len(self._leads)


class LeadSyncEngine:
    def __init__(
        self,
        event_bus: EventBus,
        kv_store: KeyValueStore,
        chat_view: ChatViewModel,
        lead_cache: Optional[LeadCache] = None,
        clock: Clock = utc_now,
        drain_interval_seconds: float = 2.0,
        refresh_throttle_seconds: float = 5.0,
        origin: Optional[str] = None,
    ):
        self.event_bus = event_bus
        self.kv_store = kv_store
        self.chat_view = chat_view
        self.lead_cache = lead_cache if lead_cache is not None else LeadCache()
        self.clock = clock
        self.refresh_throttle_seconds = refresh_throttle_seconds
        self.origin = origin or f"engine-{uuid.uuid4().hex[:8]}"

        self.pending: dict[str, PendingSyncUpdate] = {}
        self.pending_stages: dict[str, PendingStageUpdate] = {}
        self.last_refresh_at: Optional[datetime] = None
        self.timer = RepeatingTimer("sync_drain", drain_interval_seconds, self.drain)
        self._unsubscribers: list[Callable[[], None]] = []
        self._mirror_lock = asyncio.Lock()
        self._mirror_tasks: set[asyncio.Task] = set()

    # -- lifecycle --

    def subscribe(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.event_bus.subscribe(EventTag.LEAD_NAME_CHANGED, self._on_name_changed),
            self.event_bus.subscribe(EventTag.LEAD_STAGE_CHANGED, self._on_stage_changed),
            self.event_bus.subscribe(EventTag.FORCE_RESYNC, self._on_force_resync),
            self.kv_store.subscribe(self._on_store_change),
        ]

    def start(self) -> None:
        self.subscribe()
        self.timer.start()
        logger.info("Lead sync engine started", extra={"context": {"origin": self.origin}})

    async def stop(self) -> None:
        """Unsubscribe, apply what is still pending and wait for mirror writes."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.timer.stop()
        await self.drain()
        await self.flush()

    async def flush(self) -> None:
        """Wait until every queued mirror write has reached the store."""
        while self._mirror_tasks:
            await asyncio.gather(*list(self._mirror_tasks))

    # -- intake --

    def sync_lead_to_chat(
        self,
        lead_id: Any,
        name: Any,
        *,
        stage: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        broadcast: bool = True,
    ) -> bool:
        """Queue a lead's display data for the chat view.

        Returns False when the input is rejected or the update is a duplicate.
        """
        normalized_id = normalize_lead_id(lead_id)
        if normalized_id is None:
            logger.warning("Invalid lead id for chat sync", extra={"context": {"lead_id": str(lead_id)}})
            return False
        if not is_valid_display_name(name):
            logger.warning(
                "Invalid name for chat sync",
                extra={"context": {"lead_id": normalized_id, "name": str(name)}},
            )
            return False

        update = PendingSyncUpdate(
            lead_id=normalized_id,
            name=name,
            stage=stage,
            email=email,
            phone=phone,
            timestamp=self.clock(),
        )
        accepted = self.add_pending(update)

        if accepted and broadcast:
            self.event_bus.publish(
                LeadNameChanged(
                    lead_id=normalized_id,
                    name=name,
                    stage=stage,
                    email=email,
                    phone=phone,
                    origin=self.origin,
                )
            )
        return accepted

    def add_pending(self, update: PendingSyncUpdate, mirror: bool = True) -> bool:
        existing = self.pending.get(update.lead_id)
        if existing is not None and existing.name == update.name:
            logger.debug("Duplicate chat sync ignored", extra={"context": {"lead_id": update.lead_id}})
            return False

        self.pending[update.lead_id] = update
        self.lead_cache.update(
            update.lead_id,
            update.timestamp,
            name=update.name,
            stage=update.stage,
            email=update.email,
            phone=update.phone,
        )
        self._apply(update.lead_id, update)
        if mirror:
            self._mirror(SYNC_UPDATES_KEY, [entry.model_dump(mode="json") for entry in self.pending.values()])
        return True

    def add_pending_stage(self, update: PendingStageUpdate, mirror: bool = True) -> None:
        self.pending_stages[update.lead_id] = update
        self.lead_cache.update(update.lead_id, update.timestamp, stage=update.stage)
        self._apply_stage(update.lead_id, update)
        if mirror:
            self._mirror(
                STAGE_UPDATES_KEY,
                [entry.model_dump(mode="json") for entry in self.pending_stages.values()],
            )

    def _mirror(self, key: str, value: list[dict[str, Any]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None or not self.kv_store.blocking_io:
            try:
                self.kv_store.set(key, value, origin=self.origin)
            except Exception as exc:
                logger.error("Failed to mirror pending sync updates", extra={"context": {"key": key, "error": str(exc)}})
            return

        task = loop.create_task(self._write_mirror(key, value))
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_tasks.discard)

    async def _write_mirror(self, key: str, value: list[dict[str, Any]]) -> None:
        # The lock is FIFO, so writes land in the order they were queued
        async with self._mirror_lock:
            try:
                await self.kv_store.set_async(key, value, origin=self.origin)
            except Exception as exc:
                logger.error("Failed to mirror pending sync updates", extra={"context": {"key": key, "error": str(exc)}})

    # -- applying --

    def _apply(self, lead_id: str, update: PendingSyncUpdate) -> None:
        chat_id = chat_id_for_lead(lead_id)
        try:
            if update.name:
                self.chat_view.rename_chat(chat_id, update.name)
            metadata: dict[str, Any] = {
                "last_update": update.timestamp.isoformat(),
                "synced_name": update.name,
            }
            if update.stage:
                metadata["stage"] = update.stage
            if update.email:
                metadata["email"] = update.email
            if update.phone:
                metadata["phone"] = update.phone
            self.chat_view.merge_metadata(chat_id, metadata)
            self.chat_view.trigger_update(self.clock())
        except Exception as exc:
            logger.error(
                "Failed to update chat view",
                extra={"context": {"lead_id": lead_id, "error": str(exc)}},
            )

    def _apply_stage(self, lead_id: str, update: PendingStageUpdate) -> None:
        chat_id = chat_id_for_lead(lead_id)
        try:
            self.chat_view.merge_metadata(chat_id, {"stage": update.stage, "last_update": update.timestamp.isoformat()})
            self.chat_view.trigger_update(self.clock())
        except Exception as exc:
            logger.error(
                "Failed to apply stage change to chat view",
                extra={"context": {"lead_id": lead_id, "error": str(exc)}},
            )

    async def drain(self) -> int:
        """Apply and clear every pending update. Returns how many were applied."""
        if not self.pending and not self.pending_stages:
            return 0

        batch = list(self.pending.items())
        stages = list(self.pending_stages.items())
        self.pending.clear()
        self.pending_stages.clear()
        for lead_id, update in batch:
            self._apply(lead_id, update)
        for lead_id, stage_update in stages:
            self._apply_stage(lead_id, stage_update)
        applied = len(batch) + len(stages)
        logger.debug("Pending chat sync updates applied", extra={"context": {"count": applied}})

        await self.refresh_if_needed()
        return applied

    async def refresh_if_needed(self) -> bool:
        now = self.clock()
        if self.last_refresh_at is not None:
            elapsed = (now - self.last_refresh_at).total_seconds()
            if elapsed <= self.refresh_throttle_seconds:
                return False
        return await self._refresh(now)

    async def _refresh(self, now: datetime) -> bool:
        self.last_refresh_at = now
        try:
            await self.chat_view.refresh_chat_list()
        except Exception as exc:
            logger.error("Chat list refresh failed", extra={"context": {"error": str(exc)}})
            return False
        return True

    async def force_resync(self) -> int:
        """Re-apply every cached lead and refresh the chat list unconditionally."""
        applied = 0
        for lead_id, cached in self.lead_cache.items():
            if not cached.name:
                continue
            update = PendingSyncUpdate(
                lead_id=lead_id,
                name=cached.name,
                stage=cached.stage,
                email=cached.email,
                phone=cached.phone,
                timestamp=cached.updated_at or self.clock(),
            )
            self._apply(lead_id, update)
            applied += 1

        await self._refresh(self.clock())
        logger.info("Full chat resync finished", extra={"context": {"leads": applied}})
        return applied

    # -- subscriptions --

    def _on_name_changed(self, event: LeadNameChanged) -> None:
        if event.origin == self.origin:
            return
        self.sync_lead_to_chat(
            event.lead_id,
            event.name,
            stage=event.stage,
            email=event.email,
            phone=event.phone,
            broadcast=False,
        )

    def _on_stage_changed(self, event: LeadStageChanged) -> None:
        lead_id = normalize_lead_id(event.lead_id)
        if lead_id is None:
            return
        self.add_pending_stage(
            PendingStageUpdate(
                lead_id=lead_id,
                stage=event.new_stage,
                tenant_id=event.tenant_id,
                timestamp=self.clock(),
            )
        )

    async def _on_force_resync(self, event: ForceResync) -> None:
        await self.force_resync()

    def _on_store_change(self, change: KeyChange) -> None:
        if change.origin == self.origin or not isinstance(change.value, list):
            return
        if change.key == SYNC_UPDATES_KEY:
            self._replay(change.value, PendingSyncUpdate)
        elif change.key == STAGE_UPDATES_KEY:
            self._replay(change.value, PendingStageUpdate)

    def _replay(self, entries: list[Any], model: type) -> None:
        for raw in entries:
            try:
                update = model.model_validate(raw)
            except ValidationError as exc:
                logger.error("Malformed replayed sync update", extra={"context": {"error": str(exc)}})
                continue

            lead_id = normalize_lead_id(update.lead_id)
            if lead_id is None:
                continue
            cached = self.lead_cache.get(lead_id)
            if cached is not None and cached.updated_at is not None and update.timestamp < cached.updated_at:
                continue

            update = update.model_copy(update={"lead_id": lead_id})
            if isinstance(update, PendingStageUpdate):
                self.add_pending_stage(update, mirror=False)
            elif is_valid_display_name(update.name):
                self.add_pending(update, mirror=False)
