"""One set of lead filtering rules for both the sales funnel and the chat inbox.

The funnel and the chat must show the same leads. Both read through
``list_leads`` with the same default criteria, so a lead can only be missing
from one of them if the underlying data changes between the two reads.
"""

from typing import Any, Optional

from leadflow.logging_config import get_logger
from leadflow.schemas.lead import (
    CANONICAL_STAGES,
    DISPLAY_STAGES,
    ConsistencyReport,
    LeadFilterCriteria,
    LeadRecord,
    StageCounts,
)
from leadflow.services.collaborators.lead_repository import AggregateCounter, LeadRepository
from leadflow.services.fallback import FallbackChain, Strategy
from leadflow.services.result import Result
from leadflow.services.stage_service import normalize_stage
from leadflow.services.timers import Clock, utc_now

logger = get_logger("lead_count_service")


class LeadCountService:
    def __init__(
        self,
        repository: LeadRepository,
        aggregate_counter: Optional[AggregateCounter] = None,
        clock: Clock = utc_now,
        ttl_seconds: float = 60.0,
    ):
        self.repository = repository
        self.aggregate_counter = aggregate_counter
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        # key -> (tenant_id, stored_at, value)
        self._cache: dict[str, tuple[str, Any, Any]] = {}

    # -- cache --

    def _cache_get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        _, stored_at, value = entry
        if (self.clock() - stored_at).total_seconds() >= self.ttl_seconds:
            del self._cache[key]
            return None
        return value

    def _cache_set(self, key: str, tenant_id: str, value: Any) -> None:
        now = self.clock()
        expired = [
            stale_key
            for stale_key, (_, stored_at, _) in self._cache.items()
            if (now - stored_at).total_seconds() >= self.ttl_seconds
        ]
        for stale_key in expired:
            del self._cache[stale_key]
        self._cache[key] = (tenant_id, now, value)

    def invalidate(self, tenant_id: Optional[str] = None) -> int:
        """Drop cached lists and counts for one tenant, or everything."""
        if tenant_id is None:
            removed = len(self._cache)
            self._cache.clear()
        else:
            keys = [key for key, entry in self._cache.items() if entry[0] == tenant_id]
            for key in keys:
                del self._cache[key]
            removed = len(keys)
        logger.debug("Lead cache invalidated", extra={"context": {"tenant_id": tenant_id, "removed": removed}})
        return removed

    # -- listing --

    @staticmethod
    def default_criteria(tenant_id: str) -> LeadFilterCriteria:
        return LeadFilterCriteria(tenant_id=tenant_id, stages=list(DISPLAY_STAGES))

    @staticmethod
    def apply_criteria(leads: list[LeadRecord], criteria: LeadFilterCriteria) -> list[LeadRecord]:
        wanted_stages = set(criteria.stages) if criteria.stages else set(DISPLAY_STAGES)
        wanted_stages = {normalize_stage(stage) for stage in wanted_stages}

        result = []
        seen: set[str] = set()
        for lead in leads:
            if lead.id in seen:
                continue
            if lead.tenant_id != criteria.tenant_id:
                continue
            if not criteria.include_closed_status and lead.status == "closed":
                continue
            if criteria.agent_id and lead.agent_id != criteria.agent_id:
                continue
            stage = normalize_stage(lead.stage)
            if not stage or stage not in wanted_stages:
                continue
            metadata = lead.metadata or {}
            if not criteria.include_removed and metadata.get("removed_from_funnel"):
                continue
            if not criteria.include_deleted and metadata.get("is_deleted"):
                continue
            seen.add(lead.id)
            result.append(lead)
        return result

    async def _query_leads(self, criteria: LeadFilterCriteria) -> list[LeadRecord]:
        leads = await self.repository.list_by_tenant(criteria.tenant_id, agent_id=criteria.agent_id)
        return self.apply_criteria(leads, criteria)

    async def list_leads(self, criteria: LeadFilterCriteria) -> list[LeadRecord]:
        """Filtered leads, cached per criteria. Returns [] if the repository fails."""
        key = f"leads:{criteria.signature()}"
        cached = self._cache_get(key)
        if cached is not None:
            return list(cached)

        try:
            leads = await self._query_leads(criteria)
        except Exception as exc:
            logger.error(
                "Failed to list leads",
                extra={"context": {"tenant_id": criteria.tenant_id, "error": str(exc)}},
            )
            return []

        self._cache_set(key, criteria.tenant_id, leads)
        return list(leads)

    async def leads_for_funnel(self, tenant_id: str) -> list[LeadRecord]:
        return await self.list_leads(self.default_criteria(tenant_id))

    async def leads_for_chat(self, tenant_id: str) -> list[LeadRecord]:
        return await self.list_leads(self.default_criteria(tenant_id))

    # -- counting --

    @staticmethod
    def _counts_from_mapping(raw: dict[str, int]) -> StageCounts:
        totals = {stage: 0 for stage in CANONICAL_STAGES}
        for label, count in raw.items():
            if label == "total":
                continue
            stage = normalize_stage(label)
            if stage in totals:
                totals[stage] += int(count)
        return StageCounts(**totals, total=raw.get("total", sum(totals.values())))

    async def counts_by_stage(
        self, tenant_id: str, include_closed_status: bool = False, include_deleted: bool = False
    ) -> Result[StageCounts]:
        """Per-stage counts. ``Result.source`` names the strategy that produced them."""
        key = f"counts:{tenant_id}:{include_closed_status}:{include_deleted}"
        cached = self._cache_get(key)
        if cached is not None:
            counts, source = cached
            return Result.success(counts.model_copy(), source=source)

        async def aggregate() -> Result[StageCounts]:
            if self.aggregate_counter is None:
                return Result.failure("No aggregate counter configured", "not_configured")
            raw = await self.aggregate_counter.counts_by_stage(tenant_id, include_closed_status, include_deleted)
            return Result.success(self._counts_from_mapping(raw))

        async def tally() -> Result[StageCounts]:
            criteria = LeadFilterCriteria(
                tenant_id=tenant_id,
                stages=list(CANONICAL_STAGES),
                include_closed_status=include_closed_status,
                include_deleted=include_deleted,
            )
            leads = await self._query_leads(criteria)
            totals = {stage: 0 for stage in CANONICAL_STAGES}
            for lead in leads:
                totals[normalize_stage(lead.stage)] += 1
            return Result.success(StageCounts(**totals, total=len(leads)))

        async def zeros() -> Result[StageCounts]:
            return Result.success(StageCounts())

        chain = FallbackChain(
            "counts_by_stage",
            [Strategy("aggregate", aggregate), Strategy("tally", tally), Strategy("zeros", zeros)],
        )
        result = await chain.run(context={"tenant_id": tenant_id})
        if result.ok and result.source != "zeros":
            self._cache_set(key, tenant_id, (result.value, result.source))
        return result

    # -- consistency --

    async def validate_consistency(self, tenant_id: str) -> ConsistencyReport:
        funnel_ids = [lead.id for lead in await self.leads_for_funnel(tenant_id)]
        chat_ids = [lead.id for lead in await self.leads_for_chat(tenant_id)]

        funnel_set = set(funnel_ids)
        chat_set = set(chat_ids)
        only_in_funnel = [lead_id for lead_id in funnel_ids if lead_id not in chat_set]
        only_in_chat = [lead_id for lead_id in chat_ids if lead_id not in funnel_set]

        report = ConsistencyReport(
            is_consistent=not only_in_funnel and not only_in_chat,
            funnel_count=len(funnel_ids),
            chat_count=len(chat_ids),
            only_in_funnel=only_in_funnel,
            only_in_chat=only_in_chat,
        )
        if not report.is_consistent:
            logger.warning(
                "Funnel and chat lead sets differ",
                extra={"context": {"tenant_id": tenant_id, **report.model_dump()}},
            )
        return report
