"""
Haven Conversation Service - Schemas.
Enumerations shared by the domain and the DTOs returned to channel handlers.
"""
from __future__ import annotations
from enum import Enum
from uuid import UUID
from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    """Author of a message."""
    USER = "user"
    ASSISTANT = "assistant"


class ConversationState(str, Enum):
    """Therapeutic phase governing tone and strategy."""
    INFO_GATHERING = "INFO_GATHERING"
    ACTIVE_GUIDANCE = "ACTIVE_GUIDANCE"
    PLAN_REVISION = "PLAN_REVISION"
    EMERGENCY_INTERVENTION = "EMERGENCY_INTERVENTION"
    SESSION_CLOSING = "SESSION_CLOSING"


_RISK_ORDER = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


class RiskLevel(str, Enum):
    """Ordered risk levels: LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self.value)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def from_score(cls, score: float) -> RiskLevel:
        """Map a score in [0, 1] onto the level thresholds."""
        if score >= 0.8:
            return cls.CRITICAL
        if score >= 0.6:
            return cls.HIGH
        if score >= 0.4:
            return cls.MEDIUM
        return cls.LOW


class TrendDirection(str, Enum):
    """Direction of the recent risk trajectory."""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class EngagementLevel(str, Enum):
    """Session engagement buckets."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    MINIMAL = "MINIMAL"

    @classmethod
    def from_score(cls, score: float) -> EngagementLevel:
        if score >= 0.8:
            return cls.HIGH
        if score >= 0.5:
            return cls.MEDIUM
        if score >= 0.3:
            return cls.LOW
        return cls.MINIMAL


class SessionResponse(BaseModel):
    """Reply package handed to the messaging channel."""
    message: str
    state: ConversationState
    risk_level: RiskLevel
    suggested_techniques: list[str] = Field(default_factory=list)
    progress_score: float = Field(default=0.0, ge=0.0, le=1.0)
    progress_insights: list[str] = Field(default_factory=list)
    conversation_id: UUID | None = None
    plan_version: int | None = None
    is_fallback: bool = False


class UserInfo(BaseModel):
    """Summary of a user's active conversation."""
    conversation_id: UUID
    state: ConversationState
    message_count: int = Field(ge=0)
    session_duration_seconds: float = Field(ge=0.0)
    plan_focus_area: str | None = None
    plan_version: int | None = None
    recent_insights: list[str] = Field(default_factory=list)
