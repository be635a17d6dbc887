from abc import ABC, abstractmethod
from typing import Any

from leadflow.services.collaborators.http import HttpCollaborator


class CatalogClient(ABC):
    @abstractmethod
    async def list_products(self, tenant_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def list_services(self, tenant_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        pass


class HttpCatalogClient(HttpCollaborator, CatalogClient):
    service_name = "catalog"

    @staticmethod
    def _params(tenant_id: str, query: dict[str, Any]) -> dict[str, Any]:
        params = {"tenant_id": tenant_id}
        for key, value in query.items():
            if value is None:
                continue
            params[key] = str(value).lower() if isinstance(value, bool) else value
        return params

    async def list_products(self, tenant_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        data = await self._request("GET", "/products", params=self._params(tenant_id, query)) or {}
        return list(data.get("data") or [])

    async def list_services(self, tenant_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        data = await self._request("GET", "/services", params=self._params(tenant_id, query)) or {}
        return list(data.get("data") or [])
