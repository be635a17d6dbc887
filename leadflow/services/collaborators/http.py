from typing import Any, Optional

import httpx

from leadflow.logging_config import get_logger

logger = get_logger("collaborators.http")


class CollaboratorError(Exception):
    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class HttpCollaborator:
    """Thin JSON-over-HTTP client shared by the collaborator implementations."""

    service_name = "collaborator"

    def __init__(self, base_url: str, timeout_seconds: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.request(method, url, params=params, json=json)
        except httpx.HTTPError as exc:
            logger.error(
                f"{self.service_name} request failed",
                extra={"context": {"url": url, "error": str(exc)}},
            )
            raise CollaboratorError(self.service_name, str(exc)) from exc

        if response.status_code >= 400:
            logger.error(
                f"{self.service_name} returned an error",
                extra={"context": {"url": url, "status": response.status_code, "body": response.text[:500]}},
            )
            raise CollaboratorError(self.service_name, response.text[:200], response.status_code)

        if not response.content:
            return None
        return response.json()
