from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

CANONICAL_STAGES = ("new", "prospecting", "qualification", "opportunity", "confirmed", "closed")

# Stages listed by default on the funnel and in the chat inbox (everything but closed)
DISPLAY_STAGES = ("new", "prospecting", "qualification", "opportunity", "confirmed")


@dataclass
class LeadRecord:
    id: str
    tenant_id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    stage: Optional[str] = None
    status: Optional[str] = None
    agent_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LeadFilterCriteria(BaseModel):
    tenant_id: str
    agent_id: Optional[str] = None
    stages: Optional[list[str]] = None  # None means DISPLAY_STAGES
    include_closed_status: bool = False
    include_removed: bool = False
    include_deleted: bool = False

    def signature(self) -> str:
        return self.model_dump_json()


class StageCounts(BaseModel):
    new: int = 0
    prospecting: int = 0
    qualification: int = 0
    opportunity: int = 0
    confirmed: int = 0
    closed: int = 0
    total: int = 0


class StageCountsResponse(BaseModel):
    tenant_id: str
    counts: StageCounts
    source: Optional[str] = None


class ConsistencyReport(BaseModel):
    is_consistent: bool
    funnel_count: int
    chat_count: int
    only_in_funnel: list[str] = Field(default_factory=list)
    only_in_chat: list[str] = Field(default_factory=list)


class StageUpdate(BaseModel):
    lead_id: str
    stage_changed: bool
    previous_stage: Optional[str] = None
    new_stage: str
