from fastapi import APIRouter, Depends, HTTPException

from leadflow.container import Container, get_container
from leadflow.logging_config import get_logger
from leadflow.schemas.conversation import ConversationState
from leadflow.schemas.flow import InvalidTemplateError
from leadflow.schemas.turn import StepInput, TurnRequest, TurnResult
from leadflow.services.handlers import UnknownStepKindError
from leadflow.services.template_service import TemplateNotFoundError

router = APIRouter()

logger = get_logger("routers.flows")


@router.post("/flows/{template_id}/turn", response_model=TurnResult)
async def execute_turn(template_id: str, request: TurnRequest, container: Container = Depends(get_container)):
    """Run one turn of a flow for a lead."""
    step_input = StepInput(
        text=request.text,
        choice=request.choice,
        variables=request.variables,
        turn_id=request.turn_id,
    )
    try:
        return await container.executor.execute_turn(request.tenant_id, request.lead_id, template_id, step_input)
    except TemplateNotFoundError:
        raise HTTPException(status_code=404, detail=f"Template '{template_id}' not found")
    except (InvalidTemplateError, UnknownStepKindError) as exc:
        logger.warning(
            "Rejected turn for unusable template",
            extra={"context": {"template_id": template_id, "error": str(exc)}},
        )
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/conversations/{lead_id}/{template_id}", response_model=ConversationState)
def get_conversation(lead_id: str, template_id: str, container: Container = Depends(get_container)):
    return container.executor.get_conversation(lead_id, template_id)


@router.delete("/conversations/{lead_id}/{template_id}")
def reset_conversation(lead_id: str, template_id: str, container: Container = Depends(get_container)):
    container.executor.reset_conversation(lead_id, template_id)
    return {"success": True}
