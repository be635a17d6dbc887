"""Weighted yes/no lead qualification.

Score is the share of answered weight that was answered affirmatively, on a
0-100 scale. Unanswered questions do not count against the lead.
"""

import math
from typing import Any, Optional

from leadflow.logging_config import get_logger
from leadflow.schemas.flow import StepKind
from leadflow.services.handlers.base import StepContext, StepHandler, StepResult
from leadflow.services.stage_service import StageService

logger = get_logger("handlers.qualification")

AFFIRMATIVE_ANSWERS = {"yes", "si", "sí", "true", "1", "y", "s"}

DEFAULT_STAGES = {"high": "opportunity", "medium": "qualification", "low": "prospecting"}

LEVEL_MESSAGES = {
    "high": (
        "Basado en tus respuestas, parece que nuestro servicio es ideal para tus necesidades. "
        "Me gustaría programar una cita para que hables con uno de nuestros especialistas. "
        "¿Te gustaría que verifiquemos disponibilidad?"
    ),
    "medium": (
        "Gracias por tus respuestas. Creo que podemos ayudarte, pero necesitaría un poco más de información. "
        "¿Te interesaría programar una llamada con uno de nuestros asesores?"
    ),
    "low": (
        "Gracias por completar nuestro cuestionario. Basado en tus respuestas, permíteme brindarte "
        "información adicional que podría ser útil para ti. "
        "¿Hay algo específico que te gustaría conocer sobre nuestros servicios?"
    ),
}


def _answer_value(answer: Any) -> Any:
    # Answers may be stored raw or as {"value": ...}
    if isinstance(answer, dict):
        return answer.get("value")
    return answer


def is_answered(answer: Any) -> bool:
    value = _answer_value(answer)
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def is_affirmative(answer: Any) -> bool:
    value = _answer_value(answer)
    if value is True:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in AFFIRMATIVE_ANSWERS
    return False


def score_answers(questions: list[dict[str, Any]], answers: dict[str, Any]) -> tuple[int, int, int, int]:
    """Return (normalized score, affirmative weight, answered weight, answered count)."""
    affirmative_weight = 0
    answered_weight = 0
    answered = 0
    for question in questions:
        answer = answers.get(str(question.get("id")))
        if not is_answered(answer):
            continue
        weight = question.get("weight") or 0
        answered += 1
        answered_weight += weight
        if is_affirmative(answer):
            affirmative_weight += weight

    # Half-up rounding, so 62.5 scores 63
    score = math.floor(affirmative_weight / answered_weight * 100 + 0.5) if answered_weight > 0 else 0
    return score, affirmative_weight, answered_weight, answered


def bucket_for(score: int, high_threshold: float, medium_threshold: float) -> str:
    if score >= high_threshold:
        return "high"
    if score >= medium_threshold:
        return "medium"
    return "low"


class LeadQualificationHandler(StepHandler):
    kind = StepKind.LEAD_QUALIFICATION

    def __init__(self, stage_service: Optional[StageService] = None):
        self.stage_service = stage_service

    async def execute(self, ctx: StepContext) -> StepResult:
        config = ctx.config
        questions = config.get("questions") or []
        answers = ctx.collected_data.get("answers") or {}
        if not isinstance(answers, dict):
            answers = {}

        score, affirmative_weight, answered_weight, answered = score_answers(questions, answers)
        level = bucket_for(
            score,
            config.get("high_score_threshold", 70),
            config.get("medium_score_threshold", 40),
        )

        confidence = "normal"
        if answered < len(questions) * 0.5:
            confidence = "low"
            logger.warning(
                "Lead qualified on fewer than half of the questions",
                extra={"context": {"lead_id": ctx.lead_id, "answered": answered, "questions": len(questions)}},
            )

        target_stage = config.get(f"{level}_score_stage") or DEFAULT_STAGES[level]
        logger.info(
            "Lead qualification scored",
            extra={"context": {"lead_id": ctx.lead_id, "score": score, "level": level}},
        )

        applied_stage = None
        if config.get("update_lead_stage") and self.stage_service is not None:
            try:
                result = await self.stage_service.update_lead_stage(ctx.tenant_id, ctx.lead_id, target_stage)
                if result.ok:
                    applied_stage = result.value.new_stage
                else:
                    logger.error(
                        "Qualification stage update failed",
                        extra={"context": {"lead_id": ctx.lead_id, "stage": target_stage, "error": result.error}},
                    )
            except Exception as exc:
                logger.error(
                    "Qualification stage update failed",
                    extra={"context": {"lead_id": ctx.lead_id, "stage": target_stage, "error": str(exc)}},
                )

        context = dict(ctx.collected_data)
        context["qualification_score"] = score
        context["qualification_level"] = level
        context["qualification_confidence"] = confidence
        context["leadQualification"] = {
            "score": score,
            "level": level,
            "newStage": target_stage,
            "totalScore": affirmative_weight,
            "maxPossibleScore": answered_weight,
            "answeredQuestions": answered,
        }

        message = config.get(f"{level}_message") or LEVEL_MESSAGES[level]
        return StepResult(handle=level, message=message, context=context, stage=applied_stage)
