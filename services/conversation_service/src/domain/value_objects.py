"""
Haven Conversation Service - Value Objects.
Immutable plan content and the intermediate signals produced by the risk engine.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..schemas import ConversationState, TrendDirection


class PlanGoal(BaseModel):
    """A single plan goal keyed by codename."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    codename: str = Field(min_length=1)
    state: ConversationState
    content: str = ""
    approach: str = ""
    conditions: str = ""

    @field_validator("state", mode="before")
    @classmethod
    def normalize_state(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v


class PlanMetrics(BaseModel):
    """Progress bookkeeping carried inside a plan version."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    completed_goals: list[str] = Field(default_factory=list, alias="completedGoals")
    progress: str = ""

    @field_validator("progress", mode="before")
    @classmethod
    def stringify_progress(cls, v: Any) -> str:
        return "" if v is None else str(v)


class PlanContent(BaseModel):
    """Goals, techniques and approach of one plan version."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    goals: list[PlanGoal] = Field(min_length=1)
    techniques: list[str] = Field(min_length=1)
    approach: str = Field(min_length=1)
    focus: str | None = None
    risk_factors: list[str] = Field(default_factory=list, alias="riskFactors")
    metrics: PlanMetrics = Field(default_factory=PlanMetrics)

    @property
    def goal_codenames(self) -> set[str]:
        return {g.codename for g in self.goals}

    def find_goal(self, codename: str | None) -> PlanGoal | None:
        if not codename:
            return None
        return next((g for g in self.goals if g.codename == codename), None)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class FormatError:
    """Rejected gateway payload with the reasons it failed validation."""
    reason: str
    errors: tuple[str, ...] = ()


def parse_plan_content(data: Any) -> PlanContent | FormatError:
    """Validate an untrusted payload into PlanContent, or describe why it is unusable."""
    if not isinstance(data, dict):
        return FormatError(reason="plan payload is not an object")
    try:
        return PlanContent.model_validate(data)
    except PydanticValidationError as e:
        errors = tuple(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        return FormatError(reason="plan payload failed validation", errors=errors)


@dataclass(frozen=True)
class SentimentSignal:
    """Valence (0 = most negative) and intensity of a single message."""
    valence: float
    intensity: float
    primary_emotion: str | None = None
    reason: str = ""


@dataclass(frozen=True)
class CrisisSignal:
    """Crisis patterns spotted in a message."""
    patterns: tuple[str, ...]
    severity: float
    requires_immediate_action: bool


@dataclass(frozen=True)
class TrendSignal:
    """Shape of the recent risk history."""
    direction: TrendDirection
    volatility: float
    baseline: float
    slope: float = 0.0

    @property
    def component(self) -> float:
        if self.direction == TrendDirection.INCREASING:
            return self.baseline + self.volatility
        if self.direction == TrendDirection.DECREASING:
            return self.baseline - self.volatility
        return self.baseline
