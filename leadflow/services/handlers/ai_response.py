from typing import Optional

from leadflow.logging_config import get_logger
from leadflow.schemas.flow import StepKind
from leadflow.services.handlers.base import StepContext, StepHandler, StepResult, render_template
from leadflow.services.llm.base import ChatMessage, LLMProvider

logger = get_logger("handlers.ai_response")

DEFAULT_FALLBACK_MESSAGE = "Lo siento, no pude generar una respuesta en este momento. ¿Podrías intentarlo de nuevo?"
DEFAULT_HISTORY_LIMIT = 10


class AIResponseHandler(StepHandler):
    """Replies with the LLM, using the system prompt and the recent transcript."""

    kind = StepKind.AI_RESPONSE

    def __init__(self, llm: Optional[LLMProvider]):
        self.llm = llm

    def _build_messages(self, ctx: StepContext) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        system_prompt = ctx.config.get("system_prompt") or ctx.config.get("prompt")
        if system_prompt:
            messages.append({"role": "system", "content": render_template(system_prompt, ctx.collected_data)})

        limit = int(ctx.config.get("history_limit") or DEFAULT_HISTORY_LIMIT)
        for message in ctx.transcript[-limit:]:
            role = "user" if message.direction == "user" else "assistant"
            messages.append({"role": role, "content": message.content})
        return messages

    async def execute(self, ctx: StepContext) -> StepResult:
        fallback = ctx.config.get("fallback_message") or DEFAULT_FALLBACK_MESSAGE
        if self.llm is None:
            logger.warning("AI step reached without an LLM provider", extra={"context": {"step_id": ctx.step_id}})
            return StepResult(handle="error", message=fallback, context=ctx.collected_data)

        try:
            response = await self.llm.generate(
                messages=self._build_messages(ctx),
                model=ctx.config.get("model"),
                temperature=float(ctx.config.get("temperature", 0.7)),
                max_tokens=int(ctx.config.get("max_tokens", 1000)),
            )
        except Exception as exc:
            logger.error(
                "LLM call failed",
                extra={"context": {"lead_id": ctx.lead_id, "step_id": ctx.step_id, "error": str(exc)}},
            )
            return StepResult(handle="error", message=fallback, context=ctx.collected_data)

        reply = (response.content or "").strip()
        if not reply:
            logger.warning("LLM returned an empty reply", extra={"context": {"step_id": ctx.step_id}})
            return StepResult(handle="error", message=fallback, context=ctx.collected_data)

        logger.info(
            "AI reply generated",
            extra={"context": {"step_id": ctx.step_id, "provider": self.llm.name, "tokens": response.total_tokens}},
        )
        context = dict(ctx.collected_data)
        context[ctx.config.get("variable") or "last_ai_response"] = reply
        return StepResult(handle="next", message=reply, context=context)
