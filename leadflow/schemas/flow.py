from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StepKind(str, Enum):
    START = "start"
    MESSAGE = "message"
    INPUT = "input"
    BUTTONS = "buttons"
    CONDITIONAL = "conditional"
    AI_RESPONSE = "ai_response"
    LEAD_QUALIFICATION = "lead_qualification"
    CHECK_AVAILABILITY = "check_availability"
    BOOK_APPOINTMENT = "book_appointment"
    PRODUCT_CATALOG = "product_catalog"
    SERVICE_CATALOG = "service_catalog"
    END = "end"


# Outgoing handles per kind. The first entry is the kind's default/failure handle.
STEP_HANDLES: dict[StepKind, tuple[str, ...]] = {
    StepKind.START: ("next",),
    StepKind.MESSAGE: ("next",),
    StepKind.INPUT: ("next",),
    StepKind.BUTTONS: ("next",),
    StepKind.CONDITIONAL: ("no", "yes"),
    StepKind.AI_RESPONSE: ("error", "next"),
    StepKind.LEAD_QUALIFICATION: ("low", "medium", "high"),
    StepKind.CHECK_AVAILABILITY: ("unavailable", "available"),
    StepKind.BOOK_APPOINTMENT: ("failure", "success"),
    StepKind.PRODUCT_CATALOG: ("response",),
    StepKind.SERVICE_CATALOG: ("response",),
    StepKind.END: ("end",),
}

# Node type names used by the flow builder's react-flow export
REACT_FLOW_KIND_ALIASES = {
    "startNode": StepKind.START,
    "messageNode": StepKind.MESSAGE,
    "text": StepKind.MESSAGE,
    "inputNode": StepKind.INPUT,
    "buttonsNode": StepKind.BUTTONS,
    "listNode": StepKind.BUTTONS,
    "conditionalNode": StepKind.CONDITIONAL,
    "aiNode": StepKind.AI_RESPONSE,
    "ai": StepKind.AI_RESPONSE,
    "lead-qualification": StepKind.LEAD_QUALIFICATION,
    "check-availability": StepKind.CHECK_AVAILABILITY,
    "book-appointment": StepKind.BOOK_APPOINTMENT,
    "productNode": StepKind.PRODUCT_CATALOG,
    "products": StepKind.PRODUCT_CATALOG,
    "servicesNode": StepKind.SERVICE_CATALOG,
    "services": StepKind.SERVICE_CATALOG,
    "endNode": StepKind.END,
}


class InvalidTemplateError(Exception):
    """Raised when a flow template violates its structural invariants.

    Not a ValueError subclass so pydantic lets it propagate unwrapped.
    """


def handles_for(kind: StepKind) -> tuple[str, ...]:
    return STEP_HANDLES[kind]


def default_handle(kind: StepKind) -> str:
    return STEP_HANDLES[kind][0]


class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: StepKind
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def handles(self) -> tuple[str, ...]:
        return handles_for(self.kind)


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    handle: str = "next"
    target: str


class FlowTemplate(BaseModel):
    """Immutable chatbot script: steps plus handle-labeled transitions."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    steps: list[Step]
    transitions: list[Transition] = Field(default_factory=list)
    start_step_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_graph(self) -> "FlowTemplate":
        if not self.steps:
            raise InvalidTemplateError(f"Template {self.id} has no steps")

        step_kinds: dict[str, StepKind] = {}
        for step in self.steps:
            if step.id in step_kinds:
                raise InvalidTemplateError(f"Duplicate step id {step.id!r} in template {self.id}")
            step_kinds[step.id] = step.kind

        seen_edges: set[tuple[str, str]] = set()
        for transition in self.transitions:
            if transition.source not in step_kinds:
                raise InvalidTemplateError(f"Transition source {transition.source!r} is not a step")
            if transition.target not in step_kinds:
                raise InvalidTemplateError(f"Transition target {transition.target!r} is not a step")
            if transition.handle not in handles_for(step_kinds[transition.source]):
                raise InvalidTemplateError(
                    f"Handle {transition.handle!r} is not valid for "
                    f"{step_kinds[transition.source].value} step {transition.source!r}"
                )
            edge = (transition.source, transition.handle)
            if edge in seen_edges:
                raise InvalidTemplateError(f"Duplicate transition {edge} in template {self.id}")
            seen_edges.add(edge)

        if self.start_step_id is not None and self.start_step_id not in step_kinds:
            raise InvalidTemplateError(f"Start step {self.start_step_id!r} is not a step")
        return self

    @property
    def start_step(self) -> Step:
        if self.start_step_id is not None:
            return self.get_step(self.start_step_id)
        for step in self.steps:
            if step.kind == StepKind.START:
                return step
        return self.steps[0]

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def has_step(self, step_id: str) -> bool:
        return any(step.id == step_id for step in self.steps)
