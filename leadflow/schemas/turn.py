from typing import Any, Optional

from pydantic import BaseModel, Field

from leadflow.schemas.conversation import Choice


class StepInput(BaseModel):
    text: Optional[str] = None
    choice: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    turn_id: Optional[str] = None


class TurnRequest(StepInput):
    tenant_id: str
    lead_id: str


class TurnResult(BaseModel):
    message: Optional[str] = None
    messages: list[str] = Field(default_factory=list)
    choices: list[Choice] = Field(default_factory=list)
    media_refs: list[dict[str, Any]] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    step_id: Optional[str] = None
    steps: list[str] = Field(default_factory=list)
    handle: Optional[str] = None
    current_step_id: Optional[str] = None
    completed: bool = False
    replayed: bool = False
