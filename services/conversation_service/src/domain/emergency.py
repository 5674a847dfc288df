"""
Haven Conversation Service - Emergency Response Path.
Crisis replies for CRITICAL-risk messages. This path always produces a reply.
"""
from __future__ import annotations
from dataclasses import dataclass
from pydantic import BaseModel, ConfigDict, Field
import structlog

from services.shared.infrastructure import (
    CompletionOptions, ContentFormatError, InferenceGateway, LLMError, complete_structured,
)
from ..schemas import RiskLevel
from .entities import Message, RiskAssessment
from .models import ConversationContext, EmergencyResponse
from .prompts import PromptTask, emergency_prompt

logger = structlog.get_logger(__name__)

BASE_URGENCY: dict[RiskLevel, float] = {
    RiskLevel.LOW: 0.2, RiskLevel.MEDIUM: 0.5, RiskLevel.HIGH: 0.8, RiskLevel.CRITICAL: 1.0,
}
URGENT_FACTORS: frozenset[str] = frozenset({
    "suicide", "suicidal_ideation", "self_harm", "violence", "immediate_danger",
})
FALLBACK_ACTIONS: tuple[str, ...] = ("provide_crisis_contacts", "ensure_immediate_safety")


@dataclass(frozen=True)
class CrisisResource:
    name: str
    contact: str
    description: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "contact": self.contact, "description": self.description}


class CrisisResourceDirectory:
    """Crisis resources keyed by risk factor; the helpline is always included."""

    def __init__(self, hotline: str = "988") -> None:
        self._helpline = CrisisResource("Crisis Helpline", hotline, "24/7 crisis support and suicide prevention")
        self._by_factor: dict[str, CrisisResource] = {
            "violence": CrisisResource("Emergency Services", "911", "Immediate danger to you or others"),
            "immediate_danger": CrisisResource("Emergency Services", "911", "Immediate danger to you or others"),
            "self_harm": CrisisResource("Crisis Text Line", "Text HOME to 741741", "Text with a trained counselor"),
        }

    @property
    def helpline(self) -> CrisisResource:
        return self._helpline

    def find_by_risk_factors(self, factors: tuple[str, ...] | list[str]) -> list[CrisisResource]:
        found = [self._helpline]
        for factor in factors:
            resource = self._by_factor.get(factor)
            if resource is not None and resource not in found:
                found.append(resource)
        return found


class EmergencyReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    content: str = Field(min_length=1)
    required_actions: list[str] = Field(default_factory=list, alias="requiredActions")
    safety_plan: list[str] = Field(default_factory=list, alias="safetyPlan")


def calculate_urgency(level: RiskLevel, factors: tuple[str, ...] | list[str]) -> float:
    urgent = sum(1 for f in factors if f in URGENT_FACTORS)
    return min(1.0, BASE_URGENCY[level] * (1 + urgent * 0.1))


class EmergencyResponder:
    """Crisis reply generation with a deterministic helpline fallback."""

    def __init__(self, gateway: InferenceGateway, *, hotline: str = "988", format_retries: int = 1,
                 directory: CrisisResourceDirectory | None = None) -> None:
        self._gateway = gateway
        self._hotline = hotline
        self._format_retries = format_retries
        self._directory = directory or CrisisResourceDirectory(hotline)

    def fallback(self, risk: RiskAssessment, language: str = "en") -> EmergencyResponse:
        if language.lower().startswith("es"):
            content = (f"Me preocupa mucho tu seguridad en este momento. "
                       f"Por favor, llama a la línea de crisis {self._hotline}.")
        else:
            content = f"I'm very concerned about your safety right now. Please call the crisis helpline at {self._hotline}."
        return EmergencyResponse(
            content=content, required_actions=FALLBACK_ACTIONS,
            resources=tuple(r.to_dict() for r in self._directory.find_by_risk_factors(risk.factors)),
            urgency=1.0, is_fallback=True,
        )

    async def respond(self, risk: RiskAssessment, context: ConversationContext, message: Message) -> EmergencyResponse:
        """Never raises: any failure yields the helpline fallback."""
        logger.error("emergency_path_engaged", conversation_id=str(context.conversation_id),
                     user_id=str(context.user_id), score=risk.score, factors=list(risk.factors))
        resources = tuple(r.to_dict() for r in self._directory.find_by_risk_factors(risk.factors))
        try:
            reply = await complete_structured(
                self._gateway, emergency_prompt(risk, context, message, self._hotline), EmergencyReply.model_validate,
                options=CompletionOptions(temperature=0.3, max_tokens=1000),
                format_retries=self._format_retries, task=PromptTask.EMERGENCY.value,
            )
        except (LLMError, ContentFormatError) as e:
            logger.warning("emergency_response_fallback", conversation_id=str(context.conversation_id), error=str(e))
            return self.fallback(risk)
        content = reply.content.strip()
        if self._hotline not in content:
            content = f"{content}\n\nIf you are in danger, please call the crisis helpline at {self._hotline} now."
        return EmergencyResponse(
            content=content, required_actions=tuple(reply.required_actions),
            safety_plan=tuple(reply.safety_plan), resources=resources,
            urgency=calculate_urgency(risk.level, risk.factors),
        )
