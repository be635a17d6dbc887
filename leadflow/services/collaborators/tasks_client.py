from abc import ABC, abstractmethod
from datetime import date

from leadflow.services.collaborators.http import HttpCollaborator


class TaskClient(ABC):
    @abstractmethod
    async def create_follow_up_task(
        self, tenant_id: str, lead_id: str, agent_id: str, due_date: date, description: str
    ) -> None:
        pass


class HttpTaskClient(HttpCollaborator, TaskClient):
    service_name = "tasks"

    async def create_follow_up_task(
        self, tenant_id: str, lead_id: str, agent_id: str, due_date: date, description: str
    ) -> None:
        await self._request(
            "POST",
            "/follow-up",
            json={
                "tenant_id": tenant_id,
                "lead_id": lead_id,
                "agent_id": agent_id,
                "due_date": due_date.isoformat(),
                "description": description,
            },
        )
