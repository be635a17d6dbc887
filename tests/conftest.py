from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from unittest.mock import Mock

import pytest

from leadflow.schemas.lead import LeadRecord
from leadflow.services.collaborators import (
    AggregateCounter,
    AppointmentClient,
    CatalogClient,
    CollaboratorError,
    LeadRepository,
    TaskClient,
    VerificationClient,
    VerificationCode,
)
from leadflow.services.conversation_store import ConversationStore
from leadflow.services.event_bus import EventBus
from leadflow.services.handlers import build_default_registry
from leadflow.services.kv_store import InMemoryKeyValueStore
from leadflow.services.lead_count_service import LeadCountService
from leadflow.services.llm import LLMProvider, LLMResponse
from leadflow.services.stage_service import StageService


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_lead(lead_id: str, stage: Optional[str] = "new", tenant_id: str = "tenant-1", **kwargs) -> LeadRecord:
    return LeadRecord(id=lead_id, tenant_id=tenant_id, stage=stage, **kwargs)


class FakeLeadRepository(LeadRepository):
    def __init__(self, leads: Optional[list[LeadRecord]] = None):
        self.leads = list(leads or [])
        self.fail = False
        self.writes: list[tuple[str, str, str]] = []
        self.list_calls = 0

    async def list_by_tenant(self, tenant_id: str, agent_id: Optional[str] = None) -> list[LeadRecord]:
        self.list_calls += 1
        if self.fail:
            raise ConnectionError("database unavailable")
        return [lead for lead in self.leads if lead.tenant_id == tenant_id]

    async def get(self, tenant_id: str, lead_id: str) -> Optional[LeadRecord]:
        if self.fail:
            raise ConnectionError("database unavailable")
        for lead in self.leads:
            if lead.tenant_id == tenant_id and lead.id == lead_id:
                return lead
        return None

    async def update_stage(self, tenant_id: str, lead_id: str, stage: str) -> None:
        if self.fail:
            raise ConnectionError("database unavailable")
        self.writes.append((tenant_id, lead_id, stage))
        for lead in self.leads:
            if lead.tenant_id == tenant_id and lead.id == lead_id:
                lead.stage = stage


class FakeAggregateCounter(AggregateCounter):
    def __init__(self, counts: Optional[dict[str, int]] = None):
        self.counts = counts or {}
        self.fail = False
        self.calls = 0

    async def counts_by_stage(self, tenant_id: str, include_closed_status: bool, include_deleted: bool) -> dict[str, int]:
        self.calls += 1
        if self.fail:
            raise ConnectionError("function get_lead_counts_by_stage does not exist")
        return dict(self.counts)


class FakeAppointmentClient(AppointmentClient):
    def __init__(self, slots: Optional[list[dict[str, Any]]] = None):
        self.slots = slots if slots is not None else []
        self.fail_availability = False
        self.fail_booking = False
        self.created: list[dict[str, Any]] = []

    async def check_availability(self, tenant_id, date, appointment_type_id=None, location_id=None, agent_id=None):
        if self.fail_availability:
            raise CollaboratorError("appointments", "timeout")
        return [dict(slot) for slot in self.slots]

    async def create_appointment(self, tenant_id, appointment):
        if self.fail_booking:
            raise CollaboratorError("appointments", "slot taken", 409)
        self.created.append(appointment)
        return {"id": f"apt-{len(self.created)}", **appointment}


class FakeTaskClient(TaskClient):
    def __init__(self):
        self.tasks: list[dict[str, Any]] = []
        self.fail = False

    async def create_follow_up_task(self, tenant_id, lead_id, agent_id, due_date, description):
        if self.fail:
            raise CollaboratorError("tasks", "unavailable")
        self.tasks.append(
            {"lead_id": lead_id, "agent_id": agent_id, "due_date": due_date, "description": description}
        )


class FakeVerificationClient(VerificationClient):
    def __init__(self):
        self.emails: list[tuple[str, str]] = []
        self.fail_email = False

    async def generate_for_appointment(self, tenant_id, appointment_id):
        return VerificationCode(url=f"https://qr.example/{appointment_id}", token=f"tok-{appointment_id}")

    async def send_by_email(self, tenant_id, appointment_id, email):
        if self.fail_email:
            raise CollaboratorError("verification", "smtp down")
        self.emails.append((appointment_id, email))


class FakeCatalogClient(CatalogClient):
    def __init__(self, products=None, services=None):
        self.products = products or []
        self.services = services or []
        self.fail = False

    async def list_products(self, tenant_id, query):
        if self.fail:
            raise CollaboratorError("catalog", "unavailable")
        return list(self.products)

    async def list_services(self, tenant_id, query):
        if self.fail:
            raise CollaboratorError("catalog", "unavailable")
        return list(self.services)


class FakeLLM(LLMProvider):
    def __init__(self, reply: str = "Claro, con gusto te ayudo."):
        self.reply = reply
        self.fail = False
        self.calls: list[list[dict]] = []

    async def generate(self, messages, model=None, temperature=0.7, max_tokens=1000):
        self.calls.append(messages)
        if self.fail:
            raise Exception("OpenAI API error: 500")
        return LLMResponse(content=self.reply, model=model or "fake")


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("BACKGROUND_WORKERS_ENABLED", "false")


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def conversation_store(kv_store, clock):
    return ConversationStore(kv_store, clock=clock)


@pytest.fixture
def lead_repository():
    return FakeLeadRepository()


@pytest.fixture
def aggregate_counter():
    return FakeAggregateCounter()


@pytest.fixture
def count_service(lead_repository, aggregate_counter, clock):
    return LeadCountService(lead_repository, aggregate_counter, clock=clock, ttl_seconds=60)


@pytest.fixture
def stage_service(lead_repository, event_bus, count_service):
    return StageService(lead_repository, event_bus, count_service)


@pytest.fixture
def appointments():
    return FakeAppointmentClient(
        slots=[
            {"start_time": "10:00", "end_time": "11:00"},
            {"start_time": "12:00", "end_time": "13:00"},
        ]
    )


@pytest.fixture
def tasks():
    return FakeTaskClient()


@pytest.fixture
def verification():
    return FakeVerificationClient()


@pytest.fixture
def catalog():
    return FakeCatalogClient()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def registry(appointments, catalog, tasks, verification, stage_service, llm, clock):
    return build_default_registry(
        appointments=appointments,
        catalog=catalog,
        tasks=tasks,
        verification=verification,
        stage_service=stage_service,
        llm=llm,
        clock=clock,
    )
