"""Durable per (lead, template) conversation records.

Records live in a KeyValueStore under ``chatbot_conversations:<lead>:<template>``.
Every variable write is mirrored into a lead-scoped projection under
``chatbot_collected_data:<lead>`` so other templates can read what the lead
already told us.
"""

import threading
import uuid
from datetime import timedelta
from typing import Any, Optional

from fastapi.concurrency import run_in_threadpool

from leadflow.logging_config import get_logger
from leadflow.schemas.conversation import (
    Choice,
    ConversationMessage,
    ConversationMetadata,
    ConversationState,
    ProcessedTurn,
    TemplateProgress,
)
from leadflow.schemas.flow import FlowTemplate
from leadflow.services.kv_store import KeyValueStore
from leadflow.services.timers import Clock, RepeatingTimer, utc_now

logger = get_logger("conversation_store")

CONVERSATIONS_PREFIX = "chatbot_conversations"
LEAD_DATA_PREFIX = "chatbot_collected_data"

PROCESSED_TURNS_LIMIT = 50


def conversation_key(lead_id: str, template_id: str) -> str:
    return f"{CONVERSATIONS_PREFIX}:{lead_id}:{template_id}"


def lead_data_key(lead_id: str) -> str:
    return f"{LEAD_DATA_PREFIX}:{lead_id}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


class ConversationStore:
    def __init__(self, kv: KeyValueStore, clock: Clock = utc_now, retention_days: int = 30):
        self.kv = kv
        self.clock = clock
        self.retention_days = retention_days
        # Turns for different templates of one lead share the projection
        self._lead_data_lock = threading.Lock()

    # -- persistence helpers --

    def _load(self, lead_id: str, template_id: str) -> Optional[ConversationState]:
        raw = self.kv.get(conversation_key(lead_id, template_id))
        if raw is None:
            return None
        return ConversationState.model_validate(raw)

    def _save(self, state: ConversationState) -> None:
        self.kv.set(conversation_key(state.lead_id, state.template_id), state.model_dump(mode="json"))

    def _touch(self, state: ConversationState) -> None:
        state.metadata.last_interaction_at = self.clock()

    def _new_state(self, lead_id: str, template_id: str) -> ConversationState:
        now = self.clock()
        return ConversationState(
            lead_id=lead_id,
            template_id=template_id,
            metadata=ConversationMetadata(started_at=now, last_interaction_at=now),
        )

    # -- operations --

    def get(self, lead_id: str, template_id: str) -> ConversationState:
        """Return the conversation, creating an empty one on first access."""
        state = self._load(lead_id, template_id)
        if state is None:
            state = self._new_state(lead_id, template_id)
            self._save(state)
            logger.debug(
                "Conversation created",
                extra={"context": {"lead_id": lead_id, "template_id": template_id}},
            )
        return state

    def set_current_step(self, lead_id: str, template_id: str, step_id: str) -> ConversationState:
        state = self.get(lead_id, template_id)
        state.current_step_id = step_id
        if step_id not in state.visited_steps:
            state.visited_steps.append(step_id)
        self._touch(state)
        self._save(state)
        return state

    def append_message(
        self,
        lead_id: str,
        template_id: str,
        content: str,
        direction: str,
        step_id: Optional[str] = None,
        choice: Optional[str] = None,
        choices: Optional[list[Choice]] = None,
        message_id: Optional[str] = None,
    ) -> ConversationMessage:
        """Append a message. Re-appending an existing message id is a no-op."""
        state = self.get(lead_id, template_id)
        if message_id is not None:
            for existing in state.messages:
                if existing.id == message_id:
                    return existing

        message = ConversationMessage(
            id=message_id or new_message_id(),
            step_id=step_id,
            content=content,
            timestamp=self.clock(),
            direction=direction,
            choice=choice,
            choices=choices or [],
        )
        state.messages.append(message)
        self._touch(state)
        self._save(state)
        return message

    def set_variable(self, lead_id: str, template_id: str, name: str, value: Any) -> None:
        state = self.get(lead_id, template_id)
        state.collected_data[name] = value
        self._touch(state)
        self._save(state)

        with self._lead_data_lock:
            lead_data = self.kv.get(lead_data_key(lead_id)) or {}
            lead_data[name] = value
            lead_data["last_updated"] = self.clock().isoformat()
            self.kv.set(lead_data_key(lead_id), lead_data)

    def set_awaiting_variable(self, lead_id: str, template_id: str, variable: Optional[str]) -> None:
        state = self.get(lead_id, template_id)
        if state.metadata.awaiting_variable == variable:
            return
        state.metadata.awaiting_variable = variable
        self._save(state)

    def set_stage(self, lead_id: str, template_id: str, stage: str) -> None:
        state = self.get(lead_id, template_id)
        state.metadata.stage = stage
        self._save(state)

    def mark_completed(self, lead_id: str, template_id: str) -> None:
        state = self.get(lead_id, template_id)
        state.metadata.completed = True
        self._touch(state)
        self._save(state)

    def find_processed_turn(self, lead_id: str, template_id: str, turn_id: str) -> Optional[dict[str, Any]]:
        state = self._load(lead_id, template_id)
        if state is None:
            return None
        for turn in state.metadata.processed_turns:
            if turn.turn_id == turn_id:
                return turn.response
        return None

    def record_turn(self, lead_id: str, template_id: str, turn_id: str, response: dict[str, Any]) -> None:
        state = self.get(lead_id, template_id)
        turns = [turn for turn in state.metadata.processed_turns if turn.turn_id != turn_id]
        turns.append(ProcessedTurn(turn_id=turn_id, response=response))
        state.metadata.processed_turns = turns[-PROCESSED_TURNS_LIMIT:]
        self._save(state)

    def clear_messages(self, lead_id: str, template_id: str) -> None:
        """Drop the transcript but keep collected data and position."""
        state = self.get(lead_id, template_id)
        state.messages = []
        self._touch(state)
        self._save(state)

    def reset(self, lead_id: str, template_id: str) -> None:
        self.kv.delete(conversation_key(lead_id, template_id))
        logger.info(
            "Conversation reset",
            extra={"context": {"lead_id": lead_id, "template_id": template_id}},
        )

    def list_by_lead(self, lead_id: str) -> list[ConversationState]:
        prefix = f"{CONVERSATIONS_PREFIX}:{lead_id}:"
        states = []
        for key in sorted(self.kv.keys(prefix)):
            raw = self.kv.get(key)
            if raw is not None:
                states.append(ConversationState.model_validate(raw))
        return states

    def get_lead_data(self, lead_id: str) -> dict[str, Any]:
        return self.kv.get(lead_data_key(lead_id)) or {}

    def progress(self, lead_id: str, templates: list[FlowTemplate]) -> list[TemplateProgress]:
        """Visited/total steps per template, capped at 100."""
        result = []
        for template in templates:
            total = len(template.steps)
            state = self._load(lead_id, template.id)
            visited = len(state.visited_steps) if state is not None else 0
            percent = (visited / total) * 100 if total > 0 else 0.0
            result.append(
                TemplateProgress(
                    template_id=template.id,
                    progress=min(percent, 100.0),
                    completed_steps=visited,
                    total_steps=total,
                )
            )
        return result

    def export_all(self) -> dict[str, dict[str, Any]]:
        return {key: self.kv.get(key) for key in self.kv.keys(f"{CONVERSATIONS_PREFIX}:")}

    def import_all(self, data: dict[str, dict[str, Any]]) -> int:
        """Replace all conversations with the exported ones. Returns the count imported."""
        for key in self.kv.keys(f"{CONVERSATIONS_PREFIX}:"):
            self.kv.delete(key)
        imported = 0
        for raw in data.values():
            state = ConversationState.model_validate(raw)
            self._save(state)
            imported += 1
        logger.info("Conversations imported", extra={"context": {"count": imported}})
        return imported

    def sweep(self, horizon_days: Optional[int] = None) -> int:
        """Delete conversations idle for longer than the horizon. Returns how many were removed."""
        days = self.retention_days if horizon_days is None else horizon_days
        cutoff = self.clock() - timedelta(days=days)
        removed = 0
        for key in self.kv.keys(f"{CONVERSATIONS_PREFIX}:"):
            raw = self.kv.get(key)
            if raw is None:
                continue
            state = ConversationState.model_validate(raw)
            if state.metadata.last_interaction_at < cutoff:
                self.kv.delete(key)
                removed += 1

        if removed > 0:
            logger.info(
                "Old conversations removed",
                extra={"context": {"removed": removed, "horizon_days": days}},
            )
        return removed


class RetentionSweeper:
    """Runs ConversationStore.sweep once after a short delay, then on an interval."""

    def __init__(
        self,
        store: ConversationStore,
        initial_delay_seconds: float = 5.0,
        interval_seconds: float = 24 * 60 * 60,
    ):
        self.store = store
        self.last_removed: Optional[int] = None
        self.timer = RepeatingTimer(
            "retention_sweep",
            interval_seconds,
            self._tick,
            initial_delay_seconds=initial_delay_seconds,
        )

    def run_once(self) -> int:
        self.last_removed = self.store.sweep()
        return self.last_removed

    async def _tick(self) -> int:
        return await run_in_threadpool(self.run_once)

    def start(self) -> None:
        self.timer.start()

    async def stop(self) -> None:
        await self.timer.stop()
