"""Pipeline stage normalization and stage writes.

Every surface (funnel, chat, chatbot) reads stages through ``normalize_stage``
so localized and legacy labels land on the same canonical set.
"""

import difflib
import unicodedata
from typing import TYPE_CHECKING, Optional

from leadflow.logging_config import get_logger
from leadflow.schemas.lead import CANONICAL_STAGES, LeadRecord, StageUpdate
from leadflow.services.collaborators.lead_repository import LeadRepository
from leadflow.services.event_bus import EventBus, LeadStageChanged
from leadflow.services.result import Result

if TYPE_CHECKING:
    from leadflow.services.lead_count_service import LeadCountService

logger = get_logger("stage_service")

STAGE_MAPPING = {
    # Spanish labels
    "nuevos": "new",
    "prospectando": "prospecting",
    "calificacion": "qualification",
    "calificación": "qualification",
    "oportunidad": "opportunity",
    "confirmado": "confirmed",
    "cerrado": "closed",
    # Legacy
    "first_contact": "new",
    # Canonical
    "new": "new",
    "prospecting": "prospecting",
    "qualification": "qualification",
    "opportunity": "opportunity",
    "confirmed": "confirmed",
    "closed": "closed",
}

# Label written to the lead store for each canonical stage
STORAGE_LABELS = {
    "new": "first_contact",
    "prospecting": "prospecting",
    "qualification": "qualification",
    "opportunity": "opportunity",
    "confirmed": "confirmed",
    "closed": "closed",
}


def normalize_stage(raw: Optional[str]) -> str:
    """Canonical stage for a raw label.

    Unknown labels come back lower-cased (and are logged), empty input gives "".
    """
    if raw is None:
        return ""
    label = str(raw).strip().lower()
    if not label:
        return ""
    canonical = STAGE_MAPPING.get(label)
    if canonical is not None:
        return canonical
    logger.warning("Unrecognized stage label", extra={"context": {"stage": raw}})
    return label


def is_canonical(stage: Optional[str]) -> bool:
    return stage in CANONICAL_STAGES


def storage_label(canonical: str) -> str:
    return STORAGE_LABELS.get(canonical, canonical)


def _fold(label: str) -> str:
    decomposed = unicodedata.normalize("NFKD", label.strip().lower())
    folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return folded.replace("-", "_").replace(" ", "_")


_FOLDED_MAPPING = {_fold(label): canonical for label, canonical in STAGE_MAPPING.items()}


def guess_stage(raw: Optional[str]) -> Optional[str]:
    """Best-effort canonical stage for a label the mapping does not know."""
    if not raw:
        return None
    folded = _fold(raw)
    if folded in _FOLDED_MAPPING:
        return _FOLDED_MAPPING[folded]
    matches = difflib.get_close_matches(folded, list(_FOLDED_MAPPING), n=1, cutoff=0.8)
    if matches:
        return _FOLDED_MAPPING[matches[0]]
    return None


class StageService:
    def __init__(
        self,
        repository: LeadRepository,
        event_bus: EventBus,
        count_service: Optional["LeadCountService"] = None,
    ):
        self.repository = repository
        self.event_bus = event_bus
        self.count_service = count_service

    normalize = staticmethod(normalize_stage)
    is_canonical = staticmethod(is_canonical)
    storage_label = staticmethod(storage_label)

    def _after_write(self, tenant_id: str, lead_id: str, previous: Optional[str], new_stage: str) -> None:
        if self.count_service is not None:
            self.count_service.invalidate(tenant_id)
        self.event_bus.publish(
            LeadStageChanged(tenant_id=tenant_id, lead_id=lead_id, previous_stage=previous, new_stage=new_stage)
        )

    async def update_lead_stage(self, tenant_id: str, lead_id: str, new_stage: str) -> Result[StageUpdate]:
        canonical = normalize_stage(new_stage)
        if not is_canonical(canonical):
            return Result.failure(f"Unknown stage: {new_stage!r}", "invalid_stage")

        try:
            lead = await self.repository.get(tenant_id, lead_id)
        except Exception as exc:
            logger.error(
                "Failed to load lead for stage update",
                extra={"context": {"tenant_id": tenant_id, "lead_id": lead_id, "error": str(exc)}},
            )
            return Result.failure(str(exc), "db_error")

        if lead is None:
            return Result.failure(f"Lead {lead_id} not found", "not_found")

        previous = normalize_stage(lead.stage) or None
        if previous == canonical:
            return Result.success(
                StageUpdate(lead_id=lead_id, stage_changed=False, previous_stage=previous, new_stage=canonical)
            )

        try:
            await self.repository.update_stage(tenant_id, lead_id, storage_label(canonical))
        except Exception as exc:
            logger.error(
                "Failed to write lead stage",
                extra={"context": {"tenant_id": tenant_id, "lead_id": lead_id, "stage": canonical, "error": str(exc)}},
            )
            return Result.failure(str(exc), "db_error")

        self._after_write(tenant_id, lead_id, previous, canonical)
        logger.info(
            "Lead stage updated",
            extra={"context": {"tenant_id": tenant_id, "lead_id": lead_id, "from": previous, "to": canonical}},
        )
        return Result.success(
            StageUpdate(lead_id=lead_id, stage_changed=True, previous_stage=previous, new_stage=canonical)
        )

    async def repair_stage(self, lead: LeadRecord) -> Result[Optional[str]]:
        """Write back a canonical label for a lead whose stage is not recognized.

        Returns the repaired stage, or None when the stage was already fine.
        """
        label = (lead.stage or "").strip().lower()
        if not label or label in STAGE_MAPPING:
            return Result.success(None)

        guess = guess_stage(lead.stage)
        if guess is None:
            logger.warning(
                "No canonical stage guess for lead",
                extra={"context": {"lead_id": lead.id, "stage": lead.stage}},
            )
            return Result.failure(f"No guess for stage {lead.stage!r}", "no_guess")

        try:
            await self.repository.update_stage(lead.tenant_id, lead.id, storage_label(guess))
        except Exception as exc:
            logger.error(
                "Failed to repair lead stage",
                extra={"context": {"lead_id": lead.id, "stage": lead.stage, "error": str(exc)}},
            )
            return Result.failure(str(exc), "db_error")

        self._after_write(lead.tenant_id, lead.id, label, guess)
        logger.info(
            "Lead stage repaired",
            extra={"context": {"lead_id": lead.id, "from": lead.stage, "to": guess}},
        )
        return Result.success(guess)

    async def repair_lead_stage(self, tenant_id: str, lead_id: str) -> Result[Optional[str]]:
        try:
            lead = await self.repository.get(tenant_id, lead_id)
        except Exception as exc:
            logger.error(
                "Failed to load lead for stage repair",
                extra={"context": {"tenant_id": tenant_id, "lead_id": lead_id, "error": str(exc)}},
            )
            return Result.failure(str(exc), "db_error")
        if lead is None:
            return Result.failure(f"Lead {lead_id} not found", "not_found")
        return await self.repair_stage(lead)
