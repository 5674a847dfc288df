"""
Haven Conversation Service - Domain Models.
Context snapshots and stage results passed through the message pipeline.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from ..schemas import ConversationState, EngagementLevel, RiskLevel
from .entities import Message, PlanVersion, RiskAssessment, StateTransition, TherapeuticPlan


@dataclass(frozen=True)
class ConversationContext:
    """Immutable snapshot every pipeline stage reads from."""
    user_id: UUID
    conversation_id: UUID
    current_state: ConversationState
    plan: TherapeuticPlan
    history: tuple[Message, ...] = ()
    risk_history: tuple[RiskAssessment, ...] = ()

    @property
    def plan_version(self) -> PlanVersion | None:
        return self.plan.current_version

    @property
    def latest_risk(self) -> RiskAssessment | None:
        return self.risk_history[-1] if self.risk_history else None

    def insights(self) -> list[str]:
        """Breakthroughs and challenges recorded in message metadata."""
        found: list[str] = []
        for message in self.history:
            note = message.metadata.get("breakthrough") or message.metadata.get("challenge")
            if note:
                found.append(str(note))
        return found


@dataclass(frozen=True)
class AnalysisResult:
    """Contextual analysis of the incoming message."""
    next_goal: str | None = None
    language: str = "en"
    should_be_revised: bool = False
    reason: str = ""
    is_fallback: bool = False


@dataclass(frozen=True)
class TherapeuticResponse:
    """Reply text with the insights and techniques that shaped it."""
    content: str
    insights: tuple[str, ...] = ()
    suggested_techniques: tuple[str, ...] = ()
    is_fallback: bool = False


@dataclass(frozen=True)
class EmergencyResponse:
    """Crisis reply; always carries resources."""
    content: str
    required_actions: tuple[str, ...] = ()
    safety_plan: tuple[str, ...] = ()
    resources: tuple[dict[str, str], ...] = ()
    urgency: float = 1.0
    is_fallback: bool = False


@dataclass(frozen=True)
class SessionProgress:
    """Engagement and progress metrics for the session so far."""
    engagement_score: float = 0.0
    engagement_level: EngagementLevel = EngagementLevel.MINIMAL
    breakthroughs: tuple[str, ...] = ()
    challenges: tuple[str, ...] = ()
    score: float = 0.0
    insights: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProcessingResult:
    """Everything one pipeline run produced; persisted as a unit."""
    user_message: Message
    risk_assessment: RiskAssessment
    state_transition: StateTransition
    response: TherapeuticResponse
    progress: SessionProgress
    analysis: AnalysisResult | None = None
    plan_version: PlanVersion | None = None
    emergency: EmergencyResponse | None = None
    degraded_stages: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_emergency(self) -> bool:
        return self.emergency is not None

    @property
    def risk_level(self) -> RiskLevel:
        return self.risk_assessment.level
