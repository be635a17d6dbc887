"""Runs a flow template one conversational turn at a time.

A turn records the lead's input, executes the current step's handler,
persists what changed and moves the conversation along the handle the
handler chose. A branch with no outgoing transition completes the
conversation.

Steps that have nothing to wait for keep going within the same turn: a step
continues when it awaits no variable and either sets ``wait_for_response:
false`` or produced no message and no choices (start, conditional). At most
MAX_STEPS_PER_TURN steps run per turn.

Handler and collaborator failures never escape a turn: they are logged and
mapped to the step's default handle with an apology. Only a missing or
malformed template reaches the caller.

Conversation store reads and writes run in the threadpool so a database or
redis backed store never holds the event loop.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from fastapi.concurrency import run_in_threadpool

from leadflow.logging_config import bind_logger
from leadflow.schemas.conversation import Choice, ConversationState
from leadflow.schemas.flow import FlowTemplate, Step
from leadflow.schemas.turn import StepInput, TurnResult
from leadflow.services.conversation_store import ConversationStore
from leadflow.services.flow_graph import is_declared_handle, resolve_transition
from leadflow.services.handlers.base import GENERIC_APOLOGY, StepContext, StepHandlerRegistry, StepResult
from leadflow.services.template_service import TemplateRepository

CONVERSATION_CLOSED_MESSAGE = "Esta conversación ha finalizado. ¡Gracias por contactarnos!"
STEP_LIMIT_MESSAGE = "Lo siento, no pude continuar con la conversación. Por favor, escríbenos de nuevo."

MAX_STEPS_PER_TURN = 10
MESSAGE_SEPARATOR = "\n\n"

_MISSING = object()


@dataclass
class _ConversationLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class _TurnOutput:
    messages: list[str] = field(default_factory=list)
    choices: list[Choice] = field(default_factory=list)
    media_refs: list[dict[str, Any]] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)


def _continues(step: Step, result: StepResult) -> bool:
    if result.awaits:
        return False
    wait = step.config.get("wait_for_response", step.config.get("waitForResponse"))
    if wait is False:
        return True
    return not result.message and not result.choices


class FlowExecutor:
    def __init__(
        self,
        templates: TemplateRepository,
        store: ConversationStore,
        registry: StepHandlerRegistry,
        max_steps_per_turn: int = MAX_STEPS_PER_TURN,
    ):
        self.templates = templates
        self.store = store
        self.registry = registry
        self.max_steps_per_turn = max_steps_per_turn
        self._locks: dict[tuple[str, str], _ConversationLock] = {}

    @asynccontextmanager
    async def _conversation_lock(self, lead_id: str, template_id: str) -> AsyncIterator[None]:
        # Entries live only while a turn holds or waits for them
        key = (lead_id, template_id)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _ConversationLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def execute_turn(
        self,
        tenant_id: str,
        lead_id: str,
        template_id: str,
        step_input: Optional[StepInput] = None,
    ) -> TurnResult:
        step_input = step_input or StepInput()
        template = await run_in_threadpool(self.templates.get, template_id)

        async with self._conversation_lock(lead_id, template_id):
            return await self._execute_locked(tenant_id, lead_id, template, step_input)

    async def _execute_locked(
        self, tenant_id: str, lead_id: str, template: FlowTemplate, step_input: StepInput
    ) -> TurnResult:
        log = bind_logger("flow_executor", tenant_id=tenant_id, lead_id=lead_id, template_id=template.id)

        early = await run_in_threadpool(self._begin_turn, lead_id, template, step_input, log)
        if early is not None:
            return early

        output = _TurnOutput()
        step: Optional[Step] = None
        result: Optional[StepResult] = None
        target: Optional[str] = None

        while True:
            state = await run_in_threadpool(self.store.get, lead_id, template.id)
            step = template.get_step(state.current_step_id)
            ctx = StepContext(
                tenant_id=tenant_id,
                lead_id=lead_id,
                template_id=template.id,
                step_id=step.id,
                config=copy.deepcopy(step.config),
                collected_data=copy.deepcopy(state.collected_data),
                transcript=list(state.messages),
            )
            result = await self._run_handler(step, ctx, log)

            message_id = self._bot_message_id(step_input.turn_id, len(output.messages))
            target = await run_in_threadpool(
                self._finish_step, lead_id, template, step, state, result, message_id
            )
            output.steps.append(step.id)
            if result.message:
                output.messages.append(result.message)
            if result.choices:
                output.choices = result.choices
            output.media_refs.extend(result.media_refs)

            if target is None or not _continues(step, result):
                break
            if len(output.steps) >= self.max_steps_per_turn:
                log.warning(
                    "Step limit reached within one turn",
                    context={"steps": output.steps, "next_step_id": target},
                )
                output.messages.append(STEP_LIMIT_MESSAGE)
                output.choices = []
                await run_in_threadpool(
                    self.store.append_message,
                    lead_id,
                    template.id,
                    STEP_LIMIT_MESSAGE,
                    "bot",
                    step_id=step.id,
                    message_id=self._bot_message_id(step_input.turn_id, len(output.messages) - 1),
                )
                break

        return await run_in_threadpool(
            self._complete_turn, lead_id, template.id, step_input.turn_id, step, result, target, output, log
        )

    def _begin_turn(
        self, lead_id: str, template: FlowTemplate, step_input: StepInput, log
    ) -> Optional[TurnResult]:
        """Replay, refuse or record the input. Returns a response when the turn ends here."""
        turn_id = step_input.turn_id
        if turn_id:
            stored = self.store.find_processed_turn(lead_id, template.id, turn_id)
            if stored is not None:
                log.info("Turn already processed, replaying response", context={"turn_id": turn_id})
                return TurnResult.model_validate({**stored, "replayed": True})

        state = self.store.get(lead_id, template.id)
        if state.metadata.completed:
            response = TurnResult(
                message=CONVERSATION_CLOSED_MESSAGE,
                messages=[CONVERSATION_CLOSED_MESSAGE],
                current_step_id=state.current_step_id,
                completed=True,
                context=copy.deepcopy(state.collected_data),
            )
            self._remember(lead_id, template.id, turn_id, response)
            return response

        self._record_input(lead_id, template.id, state, step_input)

        step = self._current_step(template, state, log)
        if state.current_step_id != step.id:
            self.store.set_current_step(lead_id, template.id, step.id)
        return None

    def _finish_step(
        self,
        lead_id: str,
        template: FlowTemplate,
        step: Step,
        state: ConversationState,
        result: StepResult,
        message_id: Optional[str],
    ) -> Optional[str]:
        """Persist one step's outcome and move along its handle. Returns the next step id."""
        self._persist_context(lead_id, template.id, state.collected_data, result.context)
        self.store.set_awaiting_variable(lead_id, template.id, result.awaits)
        if result.stage:
            self.store.set_stage(lead_id, template.id, result.stage)

        if result.message:
            self.store.append_message(
                lead_id,
                template.id,
                result.message,
                "bot",
                step_id=step.id,
                choices=result.choices,
                message_id=message_id,
            )

        target = resolve_transition(template, step.id, result.handle)
        if target is not None:
            self.store.set_current_step(lead_id, template.id, target)
        else:
            self.store.mark_completed(lead_id, template.id)
        return target

    def _complete_turn(
        self,
        lead_id: str,
        template_id: str,
        turn_id: Optional[str],
        step: Step,
        result: StepResult,
        target: Optional[str],
        output: _TurnOutput,
        log,
    ) -> TurnResult:
        completed = target is None
        if completed:
            log.info("Conversation completed", context={"step_id": step.id, "handle": result.handle})

        final_state = self.store.get(lead_id, template_id)
        response = TurnResult(
            message=MESSAGE_SEPARATOR.join(output.messages) if output.messages else None,
            messages=output.messages,
            choices=output.choices,
            media_refs=output.media_refs,
            context=copy.deepcopy(final_state.collected_data),
            step_id=step.id,
            steps=output.steps,
            handle=result.handle,
            current_step_id=step.id if completed else target,
            completed=completed,
        )
        self._remember(lead_id, template_id, turn_id, response)
        return response

    @staticmethod
    def _bot_message_id(turn_id: Optional[str], index: int) -> Optional[str]:
        if not turn_id:
            return None
        return f"msg_{turn_id}_bot" if index == 0 else f"msg_{turn_id}_bot_{index}"

    def _current_step(self, template: FlowTemplate, state: ConversationState, log) -> Step:
        if state.current_step_id and template.has_step(state.current_step_id):
            return template.get_step(state.current_step_id)
        if state.current_step_id:
            # Template was edited and the step is gone
            log.warning(
                "Current step missing from template, restarting at start step",
                context={"step_id": state.current_step_id},
            )
        return template.start_step

    def _record_input(
        self, lead_id: str, template_id: str, state: ConversationState, step_input: StepInput
    ) -> None:
        content = step_input.text if step_input.text else step_input.choice
        if content:
            self.store.append_message(
                lead_id,
                template_id,
                content,
                "user",
                step_id=state.current_step_id,
                choice=step_input.choice,
                message_id=f"msg_{step_input.turn_id}_user" if step_input.turn_id else None,
            )

        awaiting = state.metadata.awaiting_variable
        if awaiting and content:
            value = step_input.choice if step_input.choice is not None else step_input.text
            self.store.set_variable(lead_id, template_id, awaiting, value)
            self.store.set_awaiting_variable(lead_id, template_id, None)

        for name, value in step_input.variables.items():
            self.store.set_variable(lead_id, template_id, name, value)

    async def _run_handler(self, step: Step, ctx: StepContext, log) -> StepResult:
        handler = self.registry.get(step.kind)
        default = handler.default_handle
        try:
            result = await handler.execute(ctx)
        except Exception as exc:
            log.error(
                "Step handler failed",
                context={"step_id": step.id, "kind": step.kind.value, "error": str(exc)},
                exc_info=True,
            )
            return StepResult(handle=default, message=GENERIC_APOLOGY, context=ctx.collected_data)

        if not is_declared_handle(step.kind, result.handle):
            log.warning(
                "Handler returned an undeclared handle",
                context={"step_id": step.id, "kind": step.kind.value, "handle": result.handle},
            )
            result.handle = default
        return result

    def _persist_context(
        self, lead_id: str, template_id: str, before: dict[str, Any], after: dict[str, Any]
    ) -> None:
        for name, value in after.items():
            if before.get(name, _MISSING) != value:
                self.store.set_variable(lead_id, template_id, name, value)

    def _remember(self, lead_id: str, template_id: str, turn_id: Optional[str], response: TurnResult) -> None:
        if turn_id:
            self.store.record_turn(lead_id, template_id, turn_id, response.model_dump(mode="json"))

    def get_conversation(self, lead_id: str, template_id: str) -> ConversationState:
        """Copy of the conversation; changing it does not change the stored record."""
        return self.store.get(lead_id, template_id).model_copy(deep=True)

    def reset_conversation(self, lead_id: str, template_id: str) -> None:
        self.store.reset(lead_id, template_id)
