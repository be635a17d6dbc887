"""Funnel/chat lead views: counts, consistency and stage changes."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from leadflow.container import Container, get_container
from leadflow.schemas.lead import ConsistencyReport, StageCountsResponse, StageUpdate

router = APIRouter(prefix="/leads", tags=["leads"])


class StageChangeRequest(BaseModel):
    stage: str


STAGE_ERROR_STATUS = {"invalid_stage": 400, "no_guess": 422, "not_found": 404, "db_error": 503}


@router.get("/{tenant_id}/consistency", response_model=ConsistencyReport)
async def validate_consistency(tenant_id: str, container: Container = Depends(get_container)):
    return await container.count_service.validate_consistency(tenant_id)


@router.get("/{tenant_id}/counts", response_model=StageCountsResponse)
async def counts_by_stage(
    tenant_id: str,
    include_closed_status: bool = False,
    include_deleted: bool = False,
    container: Container = Depends(get_container),
):
    result = await container.count_service.counts_by_stage(
        tenant_id,
        include_closed_status=include_closed_status,
        include_deleted=include_deleted,
    )
    if not result.ok:
        raise HTTPException(status_code=503, detail=result.error)
    return StageCountsResponse(tenant_id=tenant_id, counts=result.value, source=result.source)


@router.post("/{tenant_id}/cache/invalidate")
async def invalidate_cache(tenant_id: str, container: Container = Depends(get_container)):
    removed = container.count_service.invalidate(tenant_id)
    return {"success": True, "removed": removed}


@router.put("/{tenant_id}/{lead_id}/stage", response_model=StageUpdate)
async def update_stage(
    tenant_id: str,
    lead_id: str,
    data: StageChangeRequest,
    container: Container = Depends(get_container),
):
    result = await container.stage_service.update_lead_stage(tenant_id, lead_id, data.stage)
    if not result.ok:
        raise HTTPException(status_code=STAGE_ERROR_STATUS.get(result.error_code, 500), detail=result.error)
    return result.value


@router.post("/{tenant_id}/{lead_id}/stage/repair")
async def repair_stage(tenant_id: str, lead_id: str, container: Container = Depends(get_container)):
    result = await container.stage_service.repair_lead_stage(tenant_id, lead_id)
    if not result.ok:
        raise HTTPException(status_code=STAGE_ERROR_STATUS.get(result.error_code, 500), detail=result.error)
    return {"success": True, "lead_id": lead_id, "repaired_stage": result.value}
