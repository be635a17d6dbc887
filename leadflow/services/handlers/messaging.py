from typing import Any, Optional

from leadflow.logging_config import get_logger
from leadflow.schemas.conversation import Choice
from leadflow.schemas.flow import StepKind
from leadflow.services.handlers.base import StepContext, StepHandler, StepResult, lookup, render_template

logger = get_logger("handlers.messaging")

DEFAULT_BUTTONS_PROMPT = "Por favor selecciona una opción:"
DEFAULT_END_MESSAGE = "Gracias por usar nuestro servicio."


def _variable_name(config: dict[str, Any]) -> Optional[str]:
    return config.get("variable") or config.get("variableName")


class StartHandler(StepHandler):
    kind = StepKind.START

    async def execute(self, ctx: StepContext) -> StepResult:
        return StepResult(handle="next", context=ctx.collected_data)


class MessageHandler(StepHandler):
    kind = StepKind.MESSAGE

    async def execute(self, ctx: StepContext) -> StepResult:
        template = ctx.config.get("message") or ctx.config.get("text")
        return StepResult(
            handle="next",
            message=render_template(template, ctx.collected_data) or None,
            context=ctx.collected_data,
        )


class InputHandler(StepHandler):
    """Asks a question; the lead's next reply is stored under ``variable``."""

    kind = StepKind.INPUT

    async def execute(self, ctx: StepContext) -> StepResult:
        prompt = ctx.config.get("prompt") or ctx.config.get("question")
        variable = _variable_name(ctx.config)
        if not variable:
            logger.warning(
                "Input step without a variable name",
                extra={"context": {"step_id": ctx.step_id, "template_id": ctx.template_id}},
            )
        return StepResult(
            handle="next",
            message=render_template(prompt, ctx.collected_data) or None,
            context=ctx.collected_data,
            awaits=variable,
        )


def parse_choices(raw_options: list[Any]) -> list[Choice]:
    choices = []
    for option in raw_options:
        if isinstance(option, dict):
            text = option.get("text") or option.get("label") or option.get("value")
            value = option.get("value") or option.get("id") or text
            if text is None:
                continue
            choices.append(Choice(text=str(text), value=str(value)))
        elif option is not None:
            choices.append(Choice(text=str(option), value=str(option)))
    return choices


class ButtonsHandler(StepHandler):
    kind = StepKind.BUTTONS

    async def execute(self, ctx: StepContext) -> StepResult:
        template = ctx.config.get("message") or ctx.config.get("question") or DEFAULT_BUTTONS_PROMPT
        options = ctx.config.get("options") or ctx.config.get("buttons") or ctx.config.get("listItems") or []
        return StepResult(
            handle="next",
            message=render_template(template, ctx.collected_data),
            choices=parse_choices(options),
            context=ctx.collected_data,
            awaits=_variable_name(ctx.config),
        )


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(actual: Any, operator: str, expected: Any) -> bool:
    """Structured comparison used by conditional steps. Unknown operators are false."""
    if operator == "exists":
        return actual is not None and actual != ""
    if operator == "not_exists":
        return actual is None or actual == ""
    if operator in ("equals", "eq", "=="):
        if actual is None:
            return expected is None
        return str(actual).strip().lower() == str(expected).strip().lower()
    if operator in ("not_equals", "ne", "!="):
        return not evaluate_condition(actual, "equals", expected)
    if operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return str(expected).lower() in str(actual).lower()
    if operator == "in":
        if not isinstance(expected, (list, tuple, set)):
            return False
        return str(actual).lower() in {str(item).lower() for item in expected}
    if operator in ("greater_than", "gt", ">", "greater_or_equal", "gte", ">=", "less_than", "lt", "<", "less_or_equal", "lte", "<="):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        if operator in ("greater_than", "gt", ">"):
            return left > right
        if operator in ("greater_or_equal", "gte", ">="):
            return left >= right
        if operator in ("less_than", "lt", "<"):
            return left < right
        return left <= right
    return False


class ConditionalHandler(StepHandler):
    """Branches on a collected variable: ``{variable, operator, value}``."""

    kind = StepKind.CONDITIONAL

    async def execute(self, ctx: StepContext) -> StepResult:
        variable = ctx.config.get("variable")
        operator = str(ctx.config.get("operator") or "equals")
        if not variable:
            logger.warning(
                "Conditional step without a variable",
                extra={"context": {"step_id": ctx.step_id, "template_id": ctx.template_id}},
            )
            return StepResult(handle="no", context=ctx.collected_data)

        actual = lookup(ctx.collected_data, variable)
        matched = evaluate_condition(actual, operator, ctx.config.get("value"))
        return StepResult(handle="yes" if matched else "no", context=ctx.collected_data)


class EndHandler(StepHandler):
    kind = StepKind.END

    async def execute(self, ctx: StepContext) -> StepResult:
        template = ctx.config.get("message") or DEFAULT_END_MESSAGE
        return StepResult(handle="end", message=render_template(template, ctx.collected_data), context=ctx.collected_data)
