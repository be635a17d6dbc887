from leadflow.models.kv_entry import KeyValueEntry
from leadflow.models.lead import Lead

__all__ = [
    "Lead",
    "KeyValueEntry",
]
