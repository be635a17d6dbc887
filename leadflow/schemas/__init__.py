from leadflow.schemas.conversation import ConversationMessage, ConversationMetadata, ConversationState
from leadflow.schemas.flow import FlowTemplate, InvalidTemplateError, Step, StepKind, Transition
from leadflow.schemas.lead import ConsistencyReport, LeadFilterCriteria, LeadRecord, StageCounts, StageUpdate
from leadflow.schemas.sync import PendingSyncUpdate
from leadflow.schemas.turn import StepInput, TurnRequest, TurnResult

__all__ = [
    "FlowTemplate",
    "Step",
    "StepKind",
    "Transition",
    "InvalidTemplateError",
    "ConversationState",
    "ConversationMessage",
    "ConversationMetadata",
    "LeadRecord",
    "LeadFilterCriteria",
    "StageCounts",
    "ConsistencyReport",
    "StageUpdate",
    "PendingSyncUpdate",
    "StepInput",
    "TurnRequest",
    "TurnResult",
]
