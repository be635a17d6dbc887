from abc import ABC, abstractmethod
from typing import Any, Optional

from leadflow.services.collaborators.http import CollaboratorError, HttpCollaborator


class AppointmentClient(ABC):
    @abstractmethod
    async def check_availability(
        self,
        tenant_id: str,
        date: str,
        appointment_type_id: Optional[str] = None,
        location_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Free slots for a date, each with at least ``start_time`` and ``end_time``."""

    @abstractmethod
    async def create_appointment(self, tenant_id: str, appointment: dict[str, Any]) -> dict[str, Any]:
        """Create the appointment and return it (with ``id``). Raises CollaboratorError."""


class HttpAppointmentClient(HttpCollaborator, AppointmentClient):
    service_name = "appointments"

    async def check_availability(
        self,
        tenant_id: str,
        date: str,
        appointment_type_id: Optional[str] = None,
        location_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        params = {"tenant_id": tenant_id, "date": date}
        if appointment_type_id:
            params["appointment_type_id"] = appointment_type_id
        if location_id:
            params["location_id"] = location_id
        if agent_id:
            params["agent_id"] = agent_id
        data = await self._request("GET", "/availability", params=params) or {}
        return list(data.get("available_slots") or [])

    async def create_appointment(self, tenant_id: str, appointment: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "", json={**appointment, "tenant_id": tenant_id}) or {}
        if not data.get("success", True) or not data.get("appointment"):
            raise CollaboratorError(self.service_name, data.get("error") or "appointment not created")
        return data["appointment"]
