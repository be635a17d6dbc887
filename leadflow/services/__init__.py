from leadflow.services.conversation_store import ConversationStore, RetentionSweeper
from leadflow.services.event_bus import EventBus, EventTag
from leadflow.services.flow_executor import FlowExecutor
from leadflow.services.kv_store import InMemoryKeyValueStore, KeyValueStore, SqlKeyValueStore
from leadflow.services.lead_count_service import LeadCountService
from leadflow.services.result import Result
from leadflow.services.stage_service import StageService
from leadflow.services.sync_engine import LeadSyncEngine

__all__ = [
    "ConversationStore",
    "RetentionSweeper",
    "EventBus",
    "EventTag",
    "FlowExecutor",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SqlKeyValueStore",
    "LeadCountService",
    "Result",
    "StageService",
    "LeadSyncEngine",
]
