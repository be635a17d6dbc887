"""Access to the shared ``leads`` table.

The SQL implementations use blocking sessions; each async method runs its
session work in the threadpool.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import text
from sqlalchemy.orm import Session

from leadflow.models.lead import Lead
from leadflow.schemas.lead import LeadRecord
from leadflow.services.timers import Clock, utc_now


def to_record(lead: Lead) -> LeadRecord:
    return LeadRecord(
        id=lead.id,
        tenant_id=lead.tenant_id,
        full_name=lead.full_name,
        email=lead.email,
        phone=lead.phone,
        stage=lead.stage,
        status=lead.status,
        agent_id=lead.agent_id,
        metadata=dict(lead.lead_metadata or {}),
        created_at=lead.created_at,
        updated_at=lead.updated_at,
    )


class LeadRepository(ABC):
    @abstractmethod
    async def list_by_tenant(self, tenant_id: str, agent_id: Optional[str] = None) -> list[LeadRecord]:
        """All leads of a tenant, newest first."""

    @abstractmethod
    async def get(self, tenant_id: str, lead_id: str) -> Optional[LeadRecord]:
        pass

    @abstractmethod
    async def update_stage(self, tenant_id: str, lead_id: str, stage: str) -> None:
        """Write the raw stage label. Raises on storage errors."""


class AggregateCounter(ABC):
    @abstractmethod
    async def counts_by_stage(
        self, tenant_id: str, include_closed_status: bool, include_deleted: bool
    ) -> dict[str, int]:
        """Per-stage counts computed by the database."""


class SqlLeadRepository(LeadRepository):
    def __init__(self, session_factory: Callable[[], Session], clock: Clock = utc_now):
        self.session_factory = session_factory
        self.clock = clock

    async def list_by_tenant(self, tenant_id: str, agent_id: Optional[str] = None) -> list[LeadRecord]:
        return await run_in_threadpool(self._list_by_tenant, tenant_id, agent_id)

    async def get(self, tenant_id: str, lead_id: str) -> Optional[LeadRecord]:
        return await run_in_threadpool(self._get, tenant_id, lead_id)

    async def update_stage(self, tenant_id: str, lead_id: str, stage: str) -> None:
        await run_in_threadpool(self._update_stage, tenant_id, lead_id, stage)

    def _list_by_tenant(self, tenant_id: str, agent_id: Optional[str]) -> list[LeadRecord]:
        db = self.session_factory()
        try:
            query = db.query(Lead).filter(Lead.tenant_id == tenant_id)
            if agent_id:
                query = query.filter(Lead.agent_id == agent_id)
            leads = query.order_by(Lead.created_at.desc()).all()
            return [to_record(lead) for lead in leads]
        finally:
            db.close()

    def _get(self, tenant_id: str, lead_id: str) -> Optional[LeadRecord]:
        db = self.session_factory()
        try:
            lead = db.query(Lead).filter(Lead.tenant_id == tenant_id, Lead.id == lead_id).first()
            return to_record(lead) if lead else None
        finally:
            db.close()

    def _update_stage(self, tenant_id: str, lead_id: str, stage: str) -> None:
        db = self.session_factory()
        try:
            lead = db.query(Lead).filter(Lead.tenant_id == tenant_id, Lead.id == lead_id).first()
            if lead is None:
                raise LookupError(f"Lead {lead_id} not found for tenant {tenant_id}")
            lead.stage = stage
            lead.updated_at = self.clock()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class SqlAggregateCounter(AggregateCounter):
    """Calls the ``get_lead_counts_by_stage`` stored function (PostgreSQL)."""

    QUERY = text(
        "SELECT stage, lead_count FROM get_lead_counts_by_stage("
        ":p_tenant_id, :p_include_closed, :p_include_deleted)"
    )

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def counts_by_stage(
        self, tenant_id: str, include_closed_status: bool, include_deleted: bool
    ) -> dict[str, int]:
        return await run_in_threadpool(self._counts_by_stage, tenant_id, include_closed_status, include_deleted)

    def _counts_by_stage(self, tenant_id: str, include_closed_status: bool, include_deleted: bool) -> dict[str, int]:
        db = self.session_factory()
        try:
            rows = db.execute(
                self.QUERY,
                {
                    "p_tenant_id": tenant_id,
                    "p_include_closed": include_closed_status,
                    "p_include_deleted": include_deleted,
                },
            ).all()
            return {str(row[0]): int(row[1]) for row in rows}
        finally:
            db.close()
