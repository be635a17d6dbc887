from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class Choice(BaseModel):
    text: str
    value: str


class ConversationMessage(BaseModel):
    id: str
    step_id: Optional[str] = None
    content: str
    timestamp: datetime
    direction: Literal["user", "bot"]
    choice: Optional[str] = None
    choices: list[Choice] = Field(default_factory=list)


class ProcessedTurn(BaseModel):
    turn_id: str
    response: dict[str, Any]


class ConversationMetadata(BaseModel):
    started_at: datetime
    last_interaction_at: datetime
    completed: bool = False
    stage: Optional[str] = None
    awaiting_variable: Optional[str] = None
    processed_turns: list[ProcessedTurn] = Field(default_factory=list)


class ConversationState(BaseModel):
    lead_id: str
    template_id: str
    current_step_id: Optional[str] = None
    visited_steps: list[str] = Field(default_factory=list)
    collected_data: dict[str, Any] = Field(default_factory=dict)
    messages: list[ConversationMessage] = Field(default_factory=list)
    metadata: ConversationMetadata


class TemplateProgress(BaseModel):
    template_id: str
    progress: float  # 0-100
    completed_steps: int
    total_steps: int
