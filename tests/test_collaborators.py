import json
import threading
from datetime import date
from unittest.mock import MagicMock

import httpx
import pytest

from leadflow.services.collaborators import (
    CollaboratorError,
    HttpAppointmentClient,
    HttpCatalogClient,
    HttpTaskClient,
    HttpVerificationClient,
    SqlAggregateCounter,
    SqlLeadRepository,
)
from leadflow.services.llm import OpenAIProvider


def recording_transport(responses):
    """MockTransport answering by path; records every request it sees."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = responses[request.url.path]
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler), seen


class TestHttpAppointmentClient:
    @pytest.mark.asyncio
    async def test_check_availability(self):
        transport, seen = recording_transport(
            {"/api/appointments/availability": (200, {"available_slots": [{"start_time": "10:00"}]})}
        )
        client = HttpAppointmentClient("http://crm/api/appointments/", transport=transport)

        slots = await client.check_availability("tenant-1", "2024-03-05", agent_id="agent-1")

        assert slots == [{"start_time": "10:00"}]
        assert seen[0].url.params["date"] == "2024-03-05"
        assert seen[0].url.params["agent_id"] == "agent-1"
        assert "location_id" not in seen[0].url.params

    @pytest.mark.asyncio
    async def test_create_appointment(self):
        transport, seen = recording_transport(
            {"/api/appointments": (200, {"success": True, "appointment": {"id": "apt-9"}})}
        )
        client = HttpAppointmentClient("http://crm/api/appointments", transport=transport)

        appointment = await client.create_appointment("tenant-1", {"date": "2024-03-05"})

        assert appointment == {"id": "apt-9"}
        assert json.loads(seen[0].content) == {"date": "2024-03-05", "tenant_id": "tenant-1"}

    @pytest.mark.asyncio
    async def test_unsuccessful_payload_raises(self):
        transport, _ = recording_transport({"/api/appointments": (200, {"success": False, "error": "slot taken"})})
        client = HttpAppointmentClient("http://crm/api/appointments", transport=transport)

        with pytest.raises(CollaboratorError, match="slot taken"):
            await client.create_appointment("tenant-1", {})

    @pytest.mark.asyncio
    async def test_http_error_status_raises(self):
        transport, _ = recording_transport({"/api/appointments/availability": (503, {"error": "down"})})
        client = HttpAppointmentClient("http://crm/api/appointments", transport=transport)

        with pytest.raises(CollaboratorError) as exc_info:
            await client.check_availability("tenant-1", "2024-03-05")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = HttpAppointmentClient("http://crm/api/appointments", transport=httpx.MockTransport(handler))

        with pytest.raises(CollaboratorError):
            await client.check_availability("tenant-1", "2024-03-05")


class TestOtherHttpClients:
    @pytest.mark.asyncio
    async def test_follow_up_task(self):
        transport, seen = recording_transport({"/api/tasks/follow-up": (200, {"success": True})})
        client = HttpTaskClient("http://crm/api/tasks", transport=transport)

        await client.create_follow_up_task("tenant-1", "42", "agent-1", date(2024, 3, 6), "Seguimiento")

        assert json.loads(seen[0].content)["due_date"] == "2024-03-06"

    @pytest.mark.asyncio
    async def test_verification_code(self):
        transport, _ = recording_transport(
            {"/qr/generate": (200, {"success": True, "qrUrl": "https://qr/1", "token": "abc"})}
        )
        client = HttpVerificationClient("http://crm/qr", transport=transport)

        code = await client.generate_for_appointment("tenant-1", "apt-1")

        assert code.url == "https://qr/1"
        assert code.token == "abc"

    @pytest.mark.asyncio
    async def test_catalog_params(self):
        transport, seen = recording_transport({"/catalog/products": (200, {"data": [{"name": "Casa"}]})})
        client = HttpCatalogClient("http://crm/catalog", transport=transport)

        products = await client.list_products("tenant-1", {"in_stock": True, "category_id": None, "limit": 5})

        assert products == [{"name": "Casa"}]
        params = seen[0].url.params
        assert params["in_stock"] == "true"
        assert params["limit"] == "5"
        assert "category_id" not in params


class TestSqlAggregateCounter:
    @pytest.mark.asyncio
    async def test_maps_rows(self):
        session = MagicMock()
        session.execute.return_value.all.return_value = [("first_contact", 3), ("closed", 1)]
        counter = SqlAggregateCounter(lambda: session)

        counts = await counter.counts_by_stage("tenant-1", False, True)

        assert counts == {"first_contact": 3, "closed": 1}
        params = session.execute.call_args[0][1]
        assert params == {"p_tenant_id": "tenant-1", "p_include_closed": False, "p_include_deleted": True}
        session.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_query_runs_off_the_event_loop_thread(self):
        threads = []

        def session_factory():
            threads.append(threading.get_ident())
            session = MagicMock()
            session.execute.return_value.all.return_value = []
            return session

        await SqlAggregateCounter(session_factory).counts_by_stage("tenant-1", False, False)

        assert threads and threading.get_ident() not in threads


class TestSqlLeadRepository:
    @pytest.mark.asyncio
    async def test_update_missing_lead_rolls_back(self):
        threads = []
        session = MagicMock()
        session.query.return_value.filter.return_value.first.return_value = None

        def session_factory():
            threads.append(threading.get_ident())
            return session

        repository = SqlLeadRepository(session_factory)

        with pytest.raises(LookupError):
            await repository.update_stage("tenant-1", "42", "closed")

        session.rollback.assert_called_once()
        session.close.assert_called_once()
        assert threading.get_ident() not in threads


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_generate(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"model": "gpt-4o-mini", "choices": [{"message": {"content": "Hola"}}], "usage": {"total_tokens": 5}},
            )

        provider = OpenAIProvider("sk-test", transport=httpx.MockTransport(handler))
        response = await provider.generate([{"role": "user", "content": "Hola"}], max_tokens=50)

        assert response.content == "Hola"
        assert response.total_tokens == 5
        assert seen[0]["model"] == "gpt-4o-mini"
        assert seen[0]["max_completion_tokens"] == 50

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        provider = OpenAIProvider(
            "sk-test", transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        )
        with pytest.raises(Exception, match="OpenAI API error: 500"):
            await provider.generate([{"role": "user", "content": "Hola"}])
