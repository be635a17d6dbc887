from typing import Optional

from leadflow.services.collaborators.appointment_client import AppointmentClient
from leadflow.services.collaborators.catalog_client import CatalogClient
from leadflow.services.collaborators.tasks_client import TaskClient
from leadflow.services.collaborators.verification_client import VerificationClient
from leadflow.services.handlers.ai_response import AIResponseHandler
from leadflow.services.handlers.appointments import BookAppointmentHandler, CheckAvailabilityHandler
from leadflow.services.handlers.base import (
    GENERIC_APOLOGY,
    RegistryIncompleteError,
    StepContext,
    StepHandler,
    StepHandlerRegistry,
    StepResult,
    UnknownStepKindError,
    render_template,
)
from leadflow.services.handlers.catalog import ProductCatalogHandler, ServiceCatalogHandler
from leadflow.services.handlers.messaging import (
    ButtonsHandler,
    ConditionalHandler,
    EndHandler,
    InputHandler,
    MessageHandler,
    StartHandler,
)
from leadflow.services.handlers.qualification import LeadQualificationHandler
from leadflow.services.llm.base import LLMProvider
from leadflow.services.stage_service import StageService
from leadflow.services.timers import Clock, utc_now


def build_default_registry(
    *,
    appointments: AppointmentClient,
    catalog: Optional[CatalogClient] = None,
    tasks: Optional[TaskClient] = None,
    verification: Optional[VerificationClient] = None,
    stage_service: Optional[StageService] = None,
    llm: Optional[LLMProvider] = None,
    clock: Clock = utc_now,
) -> StepHandlerRegistry:
    """Registry with a handler for every step kind. Fails fast if one is missing."""
    registry = StepHandlerRegistry(
        [
            StartHandler(),
            MessageHandler(),
            InputHandler(),
            ButtonsHandler(),
            ConditionalHandler(),
            AIResponseHandler(llm),
            LeadQualificationHandler(stage_service),
            CheckAvailabilityHandler(appointments, clock=clock),
            BookAppointmentHandler(appointments, stage_service=stage_service, tasks=tasks, verification=verification),
            ProductCatalogHandler(catalog),
            ServiceCatalogHandler(catalog),
            EndHandler(),
        ]
    )
    registry.check_complete()
    return registry


__all__ = [
    "GENERIC_APOLOGY",
    "RegistryIncompleteError",
    "StepContext",
    "StepHandler",
    "StepHandlerRegistry",
    "StepResult",
    "UnknownStepKindError",
    "render_template",
    "build_default_registry",
]
