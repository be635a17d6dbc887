from fastapi import APIRouter, Depends, HTTPException

from leadflow.container import Container, get_container
from leadflow.schemas.sync import ForceResyncResponse, SyncLeadRequest, SyncLeadResponse
from leadflow.services.lead_ids import is_valid_display_name, normalize_lead_id

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/leads/{lead_id}", response_model=SyncLeadResponse)
async def sync_lead(lead_id: str, data: SyncLeadRequest, container: Container = Depends(get_container)):
    normalized_id = normalize_lead_id(lead_id)
    if normalized_id is None:
        raise HTTPException(status_code=400, detail=f"Invalid lead id '{lead_id}'")
    if not is_valid_display_name(data.name):
        raise HTTPException(status_code=400, detail="Lead name cannot be empty")

    accepted = container.sync_engine.sync_lead_to_chat(
        normalized_id,
        data.name,
        stage=data.stage,
        email=data.email,
        phone=data.phone,
        broadcast=data.broadcast,
    )
    if not accepted:
        return SyncLeadResponse(success=False, lead_id=normalized_id, message="Duplicate update ignored")
    return SyncLeadResponse(success=True, lead_id=normalized_id, message="Queued")


@router.post("/force", response_model=ForceResyncResponse)
async def force_resync(container: Container = Depends(get_container)):
    applied = await container.sync_engine.force_resync()
    return ForceResyncResponse(success=True, leads_applied=applied)
