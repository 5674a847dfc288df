"""
Haven Conversation Service - Risk Assessment Engine.
Combines a sentiment signal, a crisis-pattern scan and the recent risk trend into
one leveled assessment per message.
"""
from __future__ import annotations
import asyncio
import math
from typing import Sequence
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field
import structlog

from haven_common.exceptions import ErrorContext, SafetyError
from services.shared.infrastructure import (
    CompletionOptions, ContentFormatError, InferenceGateway, LLMError, complete_structured,
)
from ..config import RiskSettings
from ..schemas import RiskLevel, TrendDirection
from .entities import RiskAssessment
from .prompts import PromptTask, crisis_scan_prompt, sentiment_prompt
from .value_objects import CrisisSignal, SentimentSignal, TrendSignal

logger = structlog.get_logger(__name__)

HIGH_RISK_PATTERNS: frozenset[str] = frozenset({
    "suicidal_ideation", "self_harm", "violence", "severe_dissociation", "acute_crisis",
})


class RiskAssessmentError(SafetyError):
    """Risk could not be assessed; the pipeline must not continue as if it were low."""
    error_code = "RISK_ASSESSMENT_FAILED"


class SentimentReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    score: float = Field(ge=0.0, le=1.0)
    primary_emotion: str | None = Field(default=None, alias="primaryEmotion")
    emotional_intensity: float = Field(default=0.5, ge=0.0, le=1.0, alias="emotionalIntensity")
    reason: str = ""


class CrisisScanReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    identified_patterns: list[str] = Field(default_factory=list, alias="identifiedPatterns")
    overall_severity: float = Field(default=0.0, ge=0.0, le=1.0, alias="overallSeverity")
    requires_immediate_action: bool = Field(default=False, alias="requiresImmediateAction")


def contains_high_risk_pattern(patterns: Sequence[str]) -> bool:
    """True when any pattern name mentions the high-risk vocabulary."""
    lowered = [p.lower() for p in patterns]
    return any(term in name for name in lowered for term in HIGH_RISK_PATTERNS)


class RiskTrendModel:
    """Baseline, volatility and direction of the recent risk scores."""

    def __init__(self, settings: RiskSettings | None = None) -> None:
        self._settings = settings or RiskSettings()

    def calculate_trend(self, scores: Sequence[float]) -> TrendSignal:
        recent = list(scores)[-self._settings.trend_window:]
        if len(recent) < 2:
            return TrendSignal(direction=TrendDirection.STABLE, volatility=0.0,
                               baseline=recent[-1] if recent else 0.5)
        slope = self._slope(recent)
        if slope > self._settings.slope_threshold:
            direction = TrendDirection.INCREASING
        elif slope < -self._settings.slope_threshold:
            direction = TrendDirection.DECREASING
        else:
            direction = TrendDirection.STABLE
        return TrendSignal(direction=direction, volatility=self._volatility(recent),
                           baseline=self._weighted_baseline(recent), slope=slope)

    def _weighted_baseline(self, scores: list[float]) -> float:
        """Exponentially weighted mean, newest score weighted most."""
        alpha = self._settings.ema_alpha
        weights = [(1 - alpha) ** (len(scores) - 1 - i) for i in range(len(scores))]
        return sum(w * s for w, s in zip(weights, scores)) / sum(weights)

    @staticmethod
    def _volatility(scores: list[float]) -> float:
        """Population standard deviation scaled by its maximum (0.5) for values in [0, 1]."""
        mean = sum(scores) / len(scores)
        std = math.sqrt(sum((s - mean) ** 2 for s in scores) / len(scores))
        return min(1.0, std / 0.5)

    @staticmethod
    def _slope(scores: list[float]) -> float:
        n = len(scores)
        sum_x = sum(range(n))
        sum_y = sum(scores)
        sum_xy = sum(i * s for i, s in enumerate(scores))
        sum_xx = sum(i * i for i in range(n))
        denominator = n * sum_xx - sum_x * sum_x
        if denominator == 0:
            return 0.0
        return (n * sum_xy - sum_x * sum_y) / denominator


class RiskAssessmentEngine:
    """Scores a single message against the conversation's risk history."""

    def __init__(self, gateway: InferenceGateway, settings: RiskSettings | None = None,
                 format_retries: int = 1) -> None:
        self._gateway = gateway
        self._settings = settings or RiskSettings()
        self._format_retries = format_retries
        self._trend_model = RiskTrendModel(self._settings)

    @property
    def trend_model(self) -> RiskTrendModel:
        return self._trend_model

    async def assess(self, message: str, risk_history: Sequence[RiskAssessment], *,
                     conversation_id: UUID) -> RiskAssessment:
        """
        Assess one message.

        Raises RiskAssessmentError when either gateway-backed signal cannot be
        obtained; this stage never falls back to a default score.
        """
        try:
            sentiment, crisis = await asyncio.gather(
                self.analyze_sentiment(message), self.scan_crisis_patterns(message),
            )
        except (LLMError, ContentFormatError) as e:
            raise RiskAssessmentError(
                f"Risk assessment failed: {e}",
                context=ErrorContext(operation="risk_assessment", conversation_id=str(conversation_id)),
                cause=e,
            ) from e
        trend = self._trend_model.calculate_trend([r.score for r in risk_history])
        assessment = self.combine(sentiment, crisis, trend, conversation_id=conversation_id)
        logger.info("risk_assessed", conversation_id=str(conversation_id), level=assessment.level.value,
                    score=assessment.score, trend=trend.direction.value, factors=list(assessment.factors))
        return assessment

    async def analyze_sentiment(self, message: str) -> SentimentSignal:
        reply = await complete_structured(
            self._gateway, sentiment_prompt(message), SentimentReply.model_validate,
            options=CompletionOptions(model=self._settings.sentiment_model, temperature=self._settings.temperature),
            format_retries=self._format_retries, task=PromptTask.SENTIMENT.value,
        )
        return SentimentSignal(valence=reply.score, intensity=reply.emotional_intensity,
                               primary_emotion=reply.primary_emotion, reason=reply.reason)

    async def scan_crisis_patterns(self, message: str) -> CrisisSignal:
        reply = await complete_structured(
            self._gateway, crisis_scan_prompt(message), CrisisScanReply.model_validate,
            options=CompletionOptions(model=self._settings.crisis_model, temperature=self._settings.temperature),
            format_retries=self._format_retries, task=PromptTask.CRISIS_SCAN.value,
        )
        patterns = tuple(p.strip() for p in reply.identified_patterns if p and p.strip())
        immediate = reply.requires_immediate_action or contains_high_risk_pattern(patterns)
        if immediate and not reply.requires_immediate_action:
            logger.warning("crisis_override_applied", patterns=list(patterns))
        return CrisisSignal(patterns=patterns, severity=reply.overall_severity,
                            requires_immediate_action=immediate)

    def combine(self, sentiment: SentimentSignal, crisis: CrisisSignal, trend: TrendSignal, *,
                conversation_id: UUID) -> RiskAssessment:
        """Deterministic scoring step shared by assess() and tests."""
        factors = self._collect_factors(sentiment, crisis)
        if crisis.requires_immediate_action:
            score = round(min(1.0, 0.9 + 0.1 * crisis.severity), 4)
            return RiskAssessment(conversation_id=conversation_id, level=RiskLevel.CRITICAL, score=score,
                                  factors=factors, immediate_action=True)
        s = self._settings
        score = (s.sentiment_weight * (1 - sentiment.valence) * sentiment.intensity
                 + s.crisis_weight * crisis.severity
                 + s.trend_weight * trend.component)
        if trend.direction == TrendDirection.INCREASING and trend.volatility > s.volatility_threshold:
            score *= 1 + trend.volatility
        if crisis.severity > s.severity_penalty_threshold and score > 0.5:
            score += crisis.severity * 0.2
        score = round(max(0.0, min(1.0, score)), 4)
        return RiskAssessment(conversation_id=conversation_id, level=RiskLevel.from_score(score),
                              score=score, factors=factors)

    def _collect_factors(self, sentiment: SentimentSignal, crisis: CrisisSignal) -> tuple[str, ...]:
        factors: list[str] = []
        if sentiment.intensity > self._settings.high_intensity_threshold:
            factors.append("high_emotional_intensity")
            if sentiment.primary_emotion:
                factors.append(f"emotion_{sentiment.primary_emotion.strip().lower().replace(' ', '_')}")
        for pattern in crisis.patterns:
            if pattern not in factors:
                factors.append(pattern)
        return tuple(factors)
