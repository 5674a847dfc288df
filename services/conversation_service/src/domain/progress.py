"""
Haven Conversation Service - Progress Tracking.
Session engagement, breakthroughs and challenges derived from conversation history.
"""
from __future__ import annotations
from typing import Any, Sequence
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

from ..schemas import EngagementLevel, MessageRole
from .entities import Conversation, Message
from .models import SessionProgress, TherapeuticResponse

logger = structlog.get_logger(__name__)


class ProgressTrackerSettings(BaseSettings):
    """Progress tracker configuration."""
    length_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    time_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    technique_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    baseline_gap_seconds: float = Field(default=300.0, gt=0)
    recent_window: int = Field(default=5, ge=1, le=50)
    model_config = SettingsConfigDict(env_prefix="HAVEN_PROGRESS_", env_file=".env", extra="ignore")


class ProgressTracker:
    """Computes session progress metrics; pure with respect to its inputs."""

    def __init__(self, settings: ProgressTrackerSettings | None = None) -> None:
        self._settings = settings or ProgressTrackerSettings()

    def calculate_session_metrics(self, history: Sequence[Message], response: TherapeuticResponse) -> SessionProgress:
        engagement = self.engagement_score(history)
        breakthroughs = self.identify_breakthroughs(history, response)
        challenges = self.identify_challenges(history)
        score = (engagement * 0.4
                 + min(len(breakthroughs) / 3, 1.0) * 0.4
                 + max(0.0, 1 - len(challenges) / 5) * 0.2)
        return SessionProgress(
            engagement_score=round(engagement, 4),
            engagement_level=EngagementLevel.from_score(engagement),
            breakthroughs=tuple(breakthroughs), challenges=tuple(challenges),
            score=round(min(1.0, score), 4), insights=tuple(breakthroughs),
        )

    def engagement_score(self, history: Sequence[Message]) -> float:
        user_messages = [m for m in history if m.role == MessageRole.USER]
        if not user_messages:
            return 0.0
        avg_length = sum(len(m.content) for m in user_messages) / len(user_messages)
        s = self._settings
        return (min(avg_length / 100, 1.0) * s.length_weight
                + self.time_score(user_messages) * s.time_weight
                + self.technique_adoption_score(user_messages) * s.technique_weight)

    def time_score(self, user_messages: Sequence[Message]) -> float:
        """Responsiveness: 1.0 when the mean gap is at or under the baseline."""
        if len(user_messages) < 2:
            return 0.5
        gaps = [
            (later.created_at - earlier.created_at).total_seconds()
            for earlier, later in zip(user_messages, user_messages[1:])
        ]
        avg_gap = sum(gaps) / len(gaps)
        if avg_gap <= 0:
            return 1.0
        return min(1.0, self._settings.baseline_gap_seconds / avg_gap)

    @staticmethod
    def technique_adoption_score(user_messages: Sequence[Message]) -> float:
        if not user_messages:
            return 0.0
        attempted = sum(1 for m in user_messages if m.metadata.get("technique_attempted"))
        return min(1.0, attempted / len(user_messages))

    def identify_breakthroughs(self, history: Sequence[Message], response: TherapeuticResponse) -> list[str]:
        breakthroughs = list(response.insights)
        for message in list(history)[-self._settings.recent_window:]:
            note = message.metadata.get("breakthrough")
            if note:
                breakthroughs.append(str(note))
        return breakthroughs

    def identify_challenges(self, history: Sequence[Message]) -> list[str]:
        challenges: list[str] = []
        for message in list(history)[-self._settings.recent_window:]:
            raw: Any = message.metadata.get("challenges") or message.metadata.get("challenge") or []
            for item in ([raw] if isinstance(raw, str) else raw):
                if item and item not in challenges:
                    challenges.append(str(item))
        return challenges

    @staticmethod
    def session_stats(conversation: Conversation) -> dict[str, Any]:
        messages = conversation.messages
        duration = (messages[-1].created_at - messages[0].created_at).total_seconds() if len(messages) >= 2 else 0.0
        user_count = sum(1 for m in messages if m.role == MessageRole.USER)
        return {
            "total_messages": len(messages),
            "user_messages": user_count,
            "assistant_messages": len(messages) - user_count,
            "duration_seconds": duration,
        }

    def progress_insights(self, conversation: Conversation, limit: int = 5) -> list[str]:
        """Most recent assistant insights plus recorded breakthroughs, newest last."""
        insights: list[str] = []
        for message in conversation.messages:
            if message.role == MessageRole.ASSISTANT:
                insights.extend(str(i) for i in message.metadata.get("insights", []))
            elif message.metadata.get("breakthrough"):
                insights.append(str(message.metadata["breakthrough"]))
        return insights[-limit:]
