from typing import Optional

from leadflow.schemas.flow import FlowTemplate, StepKind, handles_for


def is_declared_handle(kind: StepKind, handle: str) -> bool:
    """Check if the handle is one of the kind's outgoing branches."""
    return handle in handles_for(kind)


def resolve_transition(template: FlowTemplate, step_id: str, handle: str) -> Optional[str]:
    """Target step for (step_id, handle), or None when the branch ends the flow."""
    for edge in template.transitions:
        if edge.source == step_id and edge.handle == handle:
            return edge.target
    return None
