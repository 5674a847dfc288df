"""
Haven Conversation Service - Notification Events.
Abstract events published to the messaging-channel adapter, which renders them
(typing indicators, "please wait" notices, operator pages) however it sees fit.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class NotificationType(str, Enum):
    """Notification event types."""
    COMPOSING_RESPONSE = "composing_response"
    REVISING_PLAN = "revising_plan"
    EMERGENCY_ESCALATED = "emergency_escalated"
    OPERATOR_ALERT = "operator_alert"


@dataclass(frozen=True)
class NotificationEvent:
    """Base notification event."""
    event_type: NotificationType
    user_id: UUID
    conversation_id: UUID | None = None
    event_id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "event_id": str(self.event_id), "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(), "user_id": str(self.user_id),
            "conversation_id": str(self.conversation_id) if self.conversation_id else None,
            "payload": self.payload,
        }


def composing_response(user_id: UUID, conversation_id: UUID) -> NotificationEvent:
    return NotificationEvent(NotificationType.COMPOSING_RESPONSE, user_id, conversation_id)


def revising_plan(user_id: UUID, conversation_id: UUID, plan_id: UUID) -> NotificationEvent:
    return NotificationEvent(NotificationType.REVISING_PLAN, user_id, conversation_id,
                             payload={"plan_id": str(plan_id)})


def emergency_escalated(user_id: UUID, conversation_id: UUID, score: float, factors: list[str]) -> NotificationEvent:
    return NotificationEvent(NotificationType.EMERGENCY_ESCALATED, user_id, conversation_id,
                             payload={"score": score, "factors": factors})


def operator_alert(user_id: UUID, conversation_id: UUID | None, error_code: str, correlation_id: str,
                   message: str) -> NotificationEvent:
    return NotificationEvent(NotificationType.OPERATOR_ALERT, user_id, conversation_id,
                             payload={"error_code": error_code, "correlation_id": correlation_id, "message": message})
