from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PendingSyncUpdate(BaseModel):
    lead_id: str
    name: str
    stage: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    timestamp: datetime


class PendingStageUpdate(BaseModel):
    lead_id: str
    stage: str
    tenant_id: Optional[str] = None
    timestamp: datetime


class SyncLeadRequest(BaseModel):
    name: str
    stage: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    broadcast: bool = True


class SyncLeadResponse(BaseModel):
    success: bool
    lead_id: str
    message: Optional[str] = None


class ForceResyncResponse(BaseModel):
    success: bool
    leads_applied: int
