import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from leadflow.schemas.conversation import Choice, ConversationMessage
from leadflow.schemas.flow import StepKind, default_handle, handles_for

GENERIC_APOLOGY = (
    "Lo siento, ha ocurrido un error al procesar tu solicitud. Por favor, intenta nuevamente más tarde."
)

# Used when a {{variable}} is not in the collected data
DEFAULT_VARIABLES = {
    "nombre_usuario": "Usuario",
    "user_name": "Usuario",
    "nombre": "Usuario",
    "nombre_lead": "Usuario",
    "email_usuario": "correo@ejemplo.com",
    "telefono_usuario": "123456789",
    "company_name": "PymeBot",
    "business_name": "PymeBot",
    "tenant_name": "Empresa",
}

_VARIABLE_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def lookup(data: dict[str, Any], path: str) -> Any:
    """Value at a dotted path (``answers.budget``), or None."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def render_template(template: Optional[str], data: dict[str, Any]) -> str:
    """Substitute ``{{name}}`` from data, then defaults. Unknown names stay as written."""
    if not template:
        return ""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = lookup(data, name)
        if value is not None:
            return str(value)
        if name in DEFAULT_VARIABLES:
            return DEFAULT_VARIABLES[name]
        return match.group(0)

    return _VARIABLE_PATTERN.sub(_replace, template)


@dataclass
class StepContext:
    tenant_id: str
    lead_id: str
    template_id: str
    step_id: str
    config: dict[str, Any]
    collected_data: dict[str, Any]
    transcript: list[ConversationMessage] = field(default_factory=list)


@dataclass
class StepResult:
    handle: str
    message: Optional[str] = None
    media_refs: list[dict[str, Any]] = field(default_factory=list)
    choices: list[Choice] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    awaits: Optional[str] = None
    stage: Optional[str] = None  # set when the step moved the lead to a new stage


class UnknownStepKindError(Exception):
    def __init__(self, kind: Any):
        self.kind = kind
        super().__init__(f"No handler registered for step kind {kind!r}")


class RegistryIncompleteError(Exception):
    def __init__(self, missing: list[StepKind]):
        self.missing = missing
        super().__init__("Step kinds without a handler: " + ", ".join(kind.value for kind in missing))


class StepHandler(ABC):
    """Executes one step kind. Knows nothing about the surrounding graph."""

    kind: StepKind

    @property
    def handles(self) -> tuple[str, ...]:
        return handles_for(self.kind)

    @property
    def default_handle(self) -> str:
        return default_handle(self.kind)

    @abstractmethod
    async def execute(self, ctx: StepContext) -> StepResult:
        pass


class StepHandlerRegistry:
    def __init__(self, handlers: Optional[list[StepHandler]] = None):
        self._handlers: dict[StepKind, StepHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: StepHandler) -> None:
        self._handlers[handler.kind] = handler

    def get(self, kind: StepKind) -> StepHandler:
        handler = self._handlers.get(kind)
        if handler is None:
            raise UnknownStepKindError(kind)
        return handler

    def missing_kinds(self) -> list[StepKind]:
        return [kind for kind in StepKind if kind not in self._handlers]

    def check_complete(self) -> None:
        """Raise RegistryIncompleteError unless every StepKind has a handler."""
        missing = self.missing_kinds()
        if missing:
            raise RegistryIncompleteError(missing)

    def __contains__(self, kind: StepKind) -> bool:
        return kind in self._handlers
