import re
from typing import Any, Optional

CHAT_ID_PREFIX = "lead_"

_LEAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*$")
_PLACEHOLDERS = {"undefined", "null", "none", "nan"}


def normalize_lead_id(value: Any) -> Optional[str]:
    """Strip the chat ``lead_`` prefix and surrounding whitespace.

    Returns None for anything that is not a usable lead id.
    """
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (str, int)):
        return None
    lead_id = str(value).strip()
    if lead_id.startswith(CHAT_ID_PREFIX):
        lead_id = lead_id[len(CHAT_ID_PREFIX):]
    lead_id = lead_id.strip()
    if not lead_id or lead_id.lower() in _PLACEHOLDERS:
        return None
    if not _LEAD_ID_PATTERN.match(lead_id):
        return None
    return lead_id


def chat_id_for_lead(lead_id: str) -> str:
    return f"{CHAT_ID_PREFIX}{lead_id}"


def is_valid_display_name(name: Any) -> bool:
    if not isinstance(name, str):
        return False
    stripped = name.strip()
    return bool(stripped) and stripped not in ("undefined", "null")
