"""
Haven Conversation Service - Infrastructure Layer.
Persistence and notification adapters.
"""
from .notifier import LoggingNotifier, Notifier, RecordingNotifier
from .repository import (
    ConversationRepository,
    InMemoryConversationRepository,
    InMemoryPlanRepository,
    PlanRepository,
    UnitOfWork,
)

__all__ = [
    "ConversationRepository",
    "InMemoryConversationRepository",
    "InMemoryPlanRepository",
    "LoggingNotifier",
    "Notifier",
    "PlanRepository",
    "RecordingNotifier",
    "UnitOfWork",
]
