from leadflow.services.collaborators.appointment_client import AppointmentClient, HttpAppointmentClient
from leadflow.services.collaborators.catalog_client import CatalogClient, HttpCatalogClient
from leadflow.services.collaborators.http import CollaboratorError
from leadflow.services.collaborators.lead_repository import (
    AggregateCounter,
    LeadRepository,
    SqlAggregateCounter,
    SqlLeadRepository,
)
from leadflow.services.collaborators.tasks_client import HttpTaskClient, TaskClient
from leadflow.services.collaborators.verification_client import (
    HttpVerificationClient,
    VerificationClient,
    VerificationCode,
)

__all__ = [
    "AppointmentClient",
    "HttpAppointmentClient",
    "CatalogClient",
    "HttpCatalogClient",
    "CollaboratorError",
    "LeadRepository",
    "SqlLeadRepository",
    "AggregateCounter",
    "SqlAggregateCounter",
    "TaskClient",
    "HttpTaskClient",
    "VerificationClient",
    "HttpVerificationClient",
    "VerificationCode",
]
