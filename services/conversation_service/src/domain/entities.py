"""
Haven Conversation Service - Domain Entities.
Conversation aggregate, its immutable records, and the versioned therapeutic plan.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4
import structlog

from haven_common.exceptions import EntityNotFoundError, InvariantViolationError
from ..schemas import ConversationState, MessageRole, RiskLevel
from .value_objects import PlanContent, PlanGoal

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Message:
    """Immutable chat message."""
    conversation_id: UUID
    role: MessageRole
    content: str
    message_id: UUID = field(default_factory=uuid4)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_user(cls, conversation_id: UUID, content: str, **metadata: Any) -> Message:
        return cls(conversation_id=conversation_id, role=MessageRole.USER, content=content, metadata=dict(metadata))

    @classmethod
    def from_assistant(cls, conversation_id: UUID, content: str, **metadata: Any) -> Message:
        return cls(conversation_id=conversation_id, role=MessageRole.ASSISTANT, content=content, metadata=dict(metadata))

    @property
    def is_user(self) -> bool:
        return self.role == MessageRole.USER


@dataclass(frozen=True)
class RiskAssessment:
    """Scored, leveled risk evaluation of one message."""
    conversation_id: UUID
    level: RiskLevel
    score: float
    factors: tuple[str, ...] = ()
    immediate_action: bool = False
    assessment_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise InvariantViolationError(f"Risk score {self.score} outside [0, 1]")
        if self.immediate_action:
            if self.level != RiskLevel.CRITICAL:
                raise InvariantViolationError("Immediate-action assessments must be CRITICAL")
        elif self.level != RiskLevel.from_score(self.score):
            raise InvariantViolationError(
                f"Risk level {self.level.value} inconsistent with score {self.score:.3f}",
                details={"expected": RiskLevel.from_score(self.score).value},
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "assessment_id": str(self.assessment_id), "level": self.level.value, "score": round(self.score, 4),
            "factors": list(self.factors), "immediate_action": self.immediate_action,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class StateTransition:
    """Accepted move between conversation states."""
    from_state: ConversationState
    to_state: ConversationState
    reason: str = ""

    @property
    def changed(self) -> bool:
        return self.from_state != self.to_state


@dataclass
class Conversation:
    """Conversation aggregate: the continuity unit for one user's session."""
    user_id: UUID
    plan_id: UUID | None = None
    conversation_id: UUID = field(default_factory=uuid4)
    state: ConversationState = ConversationState.INFO_GATHERING
    messages: list[Message] = field(default_factory=list)
    risk_assessments: list[RiskAssessment] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 1

    @property
    def is_closed(self) -> bool:
        return self.state == ConversationState.SESSION_CLOSING

    @property
    def latest_risk(self) -> RiskAssessment | None:
        return self.risk_assessments[-1] if self.risk_assessments else None

    def add_message(self, message: Message) -> None:
        """Append a message owned by this conversation."""
        if message.conversation_id != self.conversation_id:
            raise InvariantViolationError("Message belongs to another conversation",
                                          details={"conversation_id": str(self.conversation_id)})
        self.messages.append(message)
        self._touch()

    def add_risk_assessment(self, assessment: RiskAssessment) -> None:
        """Append a risk record, keeping chronological order."""
        if self.risk_assessments and assessment.created_at < self.risk_assessments[-1].created_at:
            raise InvariantViolationError("Risk history must stay chronological")
        self.risk_assessments.append(assessment)
        self._touch()

    def apply_transition(self, transition: StateTransition) -> None:
        """Apply an accepted transition; the source state must match."""
        if transition.from_state != self.state:
            raise InvariantViolationError(
                f"Transition from {transition.from_state.value} does not match current state {self.state.value}")
        if transition.changed:
            logger.info("conversation_state_changed", conversation_id=str(self.conversation_id),
                        from_state=transition.from_state.value, to_state=transition.to_state.value)
        self.state = transition.to_state
        self._touch()

    def recent_messages(self, limit: int) -> list[Message]:
        return self.messages[-limit:] if limit > 0 else []

    def recent_risks(self, limit: int) -> list[RiskAssessment]:
        return self.risk_assessments[-limit:] if limit > 0 else []

    def _touch(self) -> None:
        self.updated_at, self.version = datetime.now(timezone.utc), self.version + 1


@dataclass(frozen=True)
class PlanVersion:
    """Immutable snapshot of a therapeutic plan."""
    plan_id: UUID
    version: int
    content: PlanContent
    previous_version_id: UUID | None = None
    validation_score: float = 1.0
    version_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def requires_human_review(self, threshold: float = 0.7) -> bool:
        return self.validation_score < threshold


@dataclass
class TherapeuticPlan:
    """
    Versioned plan with arena-style storage.

    Versions live in a flat map keyed by id; ``version_ids`` keeps the append
    order and ``current_version_id`` is the only field that moves afterwards.
    """
    user_id: UUID
    plan_id: UUID = field(default_factory=uuid4)
    versions: dict[UUID, PlanVersion] = field(default_factory=dict)
    version_ids: list[UUID] = field(default_factory=list)
    current_version_id: UUID | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, user_id: UUID, initial_content: PlanContent, *, plan_id: UUID | None = None) -> TherapeuticPlan:
        """Create a plan whose first version carries the seed content."""
        plan = cls(user_id=user_id, plan_id=plan_id or uuid4())
        plan.append_version(PlanVersion(plan_id=plan.plan_id, version=1, content=initial_content, validation_score=1.0))
        return plan

    @property
    def current_version(self) -> PlanVersion | None:
        return self.versions.get(self.current_version_id) if self.current_version_id else None

    @property
    def latest_version(self) -> PlanVersion | None:
        return self.versions[self.version_ids[-1]] if self.version_ids else None

    def chain(self) -> list[PlanVersion]:
        """All versions in append order."""
        return [self.versions[vid] for vid in self.version_ids]

    def append_version(self, version: PlanVersion) -> None:
        """Append a version at the head of the chain and make it current."""
        head = self.latest_version
        expected_number = head.version + 1 if head else 1
        expected_previous = head.version_id if head else None
        if version.plan_id != self.plan_id:
            raise InvariantViolationError("Version belongs to another plan", details={"plan_id": str(self.plan_id)})
        if version.version != expected_number or version.previous_version_id != expected_previous:
            raise InvariantViolationError(
                f"Version chain broken: expected v{expected_number}, got v{version.version}",
                details={"plan_id": str(self.plan_id), "expected_previous": str(expected_previous)},
            )
        self.versions[version.version_id] = version
        self.version_ids.append(version.version_id)
        self.current_version_id = version.version_id

    def rollback_to_version(self, version_id: UUID) -> PlanVersion:
        """Re-point the current version; later versions stay in history."""
        if version_id not in self.versions:
            raise EntityNotFoundError("PlanVersion", str(version_id))
        self.current_version_id = version_id
        logger.info("plan_rolled_back", plan_id=str(self.plan_id), version=self.versions[version_id].version)
        return self.versions[version_id]

    def get_current_goals(self) -> list[PlanGoal]:
        current = self.current_version
        return list(current.content.goals) if current else []

    def get_recommended_techniques(self) -> list[str]:
        current = self.current_version
        return list(current.content.techniques) if current else []
