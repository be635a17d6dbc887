from abc import ABC, abstractmethod
from dataclasses import dataclass

from leadflow.services.collaborators.http import CollaboratorError, HttpCollaborator


@dataclass
class VerificationCode:
    url: str
    token: str


class VerificationClient(ABC):
    """QR verification codes for booked appointments."""

    @abstractmethod
    async def generate_for_appointment(self, tenant_id: str, appointment_id: str) -> VerificationCode:
        pass

    @abstractmethod
    async def send_by_email(self, tenant_id: str, appointment_id: str, email: str) -> None:
        pass


class HttpVerificationClient(HttpCollaborator, VerificationClient):
    service_name = "verification"

    async def generate_for_appointment(self, tenant_id: str, appointment_id: str) -> VerificationCode:
        data = await self._request(
            "POST", "/generate", json={"tenant_id": tenant_id, "appointment_id": appointment_id}
        ) or {}
        if not data.get("success", True):
            raise CollaboratorError(self.service_name, data.get("error") or "QR generation failed")
        return VerificationCode(url=data.get("qrUrl") or "", token=data.get("token") or "")

    async def send_by_email(self, tenant_id: str, appointment_id: str, email: str) -> None:
        await self._request(
            "POST",
            "/send-email",
            json={"tenant_id": tenant_id, "appointment_id": appointment_id, "email": email},
        )
