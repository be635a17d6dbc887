"""Product and service catalog steps.

When the catalog is empty or unreachable the lead still gets a list: a fixed
example catalog is shown instead.
"""

from typing import Any, Optional

from leadflow.logging_config import get_logger
from leadflow.schemas.flow import StepKind
from leadflow.services.collaborators.catalog_client import CatalogClient
from leadflow.services.fallback import FallbackChain, Strategy
from leadflow.services.handlers.base import StepContext, StepHandler, StepResult, render_template
from leadflow.services.result import Result

logger = get_logger("handlers.catalog")

EXAMPLE_PRODUCTS = [
    {
        "id": 1,
        "name": "Producto Premium",
        "description": "Alta calidad para uso profesional",
        "price": 299.99,
        "currency": "USD",
        "stock": 15,
        "image_url": "/img/products/product-1.jpg",
    },
    {
        "id": 2,
        "name": "Producto Estándar",
        "description": "Calidad-precio excelente para uso diario",
        "price": 149.99,
        "currency": "USD",
        "stock": 42,
        "image_url": "/img/products/product-2.jpg",
    },
    {
        "id": 3,
        "name": "Producto Básico",
        "description": "Solución económica para necesidades básicas",
        "price": 79.99,
        "currency": "USD",
        "stock": 108,
        "image_url": "/img/products/product-3.jpg",
    },
]

EXAMPLE_SERVICES = [
    {
        "id": 1,
        "name": "Servicio de consultoría básica",
        "description": "Asesoramiento inicial para definir necesidades",
        "price": 100,
        "duration_minutes": 60,
    },
    {
        "id": 2,
        "name": "Servicio de consultoría avanzada",
        "description": "Asesoramiento detallado con análisis de casos",
        "price": 200,
        "duration_minutes": 90,
    },
    {
        "id": 3,
        "name": "Servicio premium",
        "description": "Solución integral con seguimiento continuo",
        "price": 350,
        "duration_minutes": 120,
    },
]


def build_query(config: dict[str, Any], include_stock: bool) -> dict[str, Any]:
    query: dict[str, Any] = {
        "category_id": config.get("category_id"),
        "sort_by": config.get("sort_by") or "name",
        "sort_direction": config.get("sort_direction") or "asc",
        "limit": config.get("limit") or 5,
    }
    if config.get("filter_by_price"):
        query["min_price"] = config.get("min_price")
        query["max_price"] = config.get("max_price")
    if include_stock and config.get("filter_by_stock") and config.get("in_stock_only"):
        query["in_stock"] = True
    return {key: value for key, value in query.items() if value is not None}


def format_products(products: list[dict[str, Any]]) -> str:
    lines = []
    for index, product in enumerate(products, start=1):
        price = f"{product.get('currency') or 'USD'} {product.get('price')}"
        stock = f" ({product['stock']} disponibles)" if product.get("stock") is not None else ""
        lines.append(f"{index}. {product.get('name')}: {price}{stock}")
        if product.get("description"):
            lines.append(f"   {product['description']}")
    return "\n".join(lines) + "\n" if lines else ""


def format_services(services: list[dict[str, Any]]) -> str:
    lines = [
        f"{index}. {service.get('name')}: ${service.get('price')} (Duración: {service.get('duration_minutes')} min)"
        for index, service in enumerate(services, start=1)
    ]
    return "\n".join(lines) + "\n" if lines else ""


class _CatalogHandler(StepHandler):
    list_variable: str
    default_template: str
    items_key: str
    query_key: str
    examples: list[dict[str, Any]]
    include_stock = False

    def __init__(self, catalog: Optional[CatalogClient]):
        self.catalog = catalog

    async def _fetch(self, tenant_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def _format(self, items: list[dict[str, Any]]) -> str:
        raise NotImplementedError

    async def execute(self, ctx: StepContext) -> StepResult:
        query = build_query(ctx.config, self.include_stock)

        async def from_catalog() -> Result[list[dict[str, Any]]]:
            if self.catalog is None:
                return Result.failure("No catalog client configured", "not_configured")
            items = await self._fetch(ctx.tenant_id, query)
            if not items:
                return Result.failure("Catalog returned no items", "empty")
            return Result.success(items)

        async def examples() -> Result[list[dict[str, Any]]]:
            return Result.success([dict(item) for item in self.examples])

        chain = FallbackChain(
            f"{self.kind.value}_lookup",
            [Strategy("catalog", from_catalog), Strategy("examples", examples)],
        )
        result = await chain.run(context={"lead_id": ctx.lead_id, "step_id": ctx.step_id})
        items = result.unwrap_or([])

        template = ctx.config.get("message_template") or self.default_template
        # List first so product names containing {{...}} are not substituted again
        message = template.replace(f"{{{{{self.list_variable}}}}}", self._format(items))
        message = render_template(message, ctx.collected_data)

        context = dict(ctx.collected_data)
        context[self.items_key] = items
        context[self.query_key] = {**query, "source": result.source}

        media_refs = []
        if ctx.config.get("include_images"):
            media_refs = [
                {
                    "url": item["image_url"],
                    "caption": f"{item.get('name')} - {item.get('currency') or 'USD'} {item.get('price')}",
                }
                for item in items
                if item.get("image_url")
            ]

        return StepResult(handle="response", message=message, media_refs=media_refs, context=context)


class ProductCatalogHandler(_CatalogHandler):
    kind = StepKind.PRODUCT_CATALOG
    list_variable = "products_list"
    default_template = "Estos son nuestros productos disponibles:\n{{products_list}}"
    items_key = "availableProducts"
    query_key = "lastProductsQuery"
    examples = EXAMPLE_PRODUCTS
    include_stock = True

    async def _fetch(self, tenant_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        return await self.catalog.list_products(tenant_id, query)

    def _format(self, items: list[dict[str, Any]]) -> str:
        return format_products(items)


class ServiceCatalogHandler(_CatalogHandler):
    kind = StepKind.SERVICE_CATALOG
    list_variable = "services_list"
    default_template = "Estos son nuestros servicios disponibles:\n{{services_list}}"
    items_key = "availableServices"
    query_key = "lastServicesQuery"
    examples = EXAMPLE_SERVICES

    async def _fetch(self, tenant_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        return await self.catalog.list_services(tenant_id, query)

    def _format(self, items: list[dict[str, Any]]) -> str:
        return format_services(items)
