"""
Haven Conversation Service - Conversation State Machine.
Legal transitions between conversation states and the decision of which
transition to propose for a message.
"""
from __future__ import annotations
from typing import Mapping
import structlog

from haven_common.exceptions import BusinessRuleViolationError
from ..schemas import ConversationState, RiskLevel
from .entities import PlanVersion, RiskAssessment, StateTransition
from .models import AnalysisResult

logger = structlog.get_logger(__name__)

S = ConversationState

ALLOWED_TRANSITIONS: Mapping[ConversationState, frozenset[ConversationState]] = {
    S.INFO_GATHERING: frozenset({S.ACTIVE_GUIDANCE, S.EMERGENCY_INTERVENTION, S.INFO_GATHERING}),
    S.ACTIVE_GUIDANCE: frozenset({
        S.ACTIVE_GUIDANCE, S.PLAN_REVISION, S.INFO_GATHERING, S.EMERGENCY_INTERVENTION, S.SESSION_CLOSING,
    }),
    S.PLAN_REVISION: frozenset({S.PLAN_REVISION, S.ACTIVE_GUIDANCE, S.EMERGENCY_INTERVENTION}),
    S.EMERGENCY_INTERVENTION: frozenset({S.EMERGENCY_INTERVENTION, S.INFO_GATHERING, S.SESSION_CLOSING}),
    S.SESSION_CLOSING: frozenset(),
}


class InvalidStateTransitionError(BusinessRuleViolationError):
    """Proposed transition is not an edge of the state graph."""
    error_code = "INVALID_STATE_TRANSITION"

    def __init__(self, current: ConversationState, proposed: ConversationState, **kwargs: object) -> None:
        super().__init__(
            "conversation_state_graph",
            f"Invalid transition from {current.value} to {proposed.value}",
            details={"from_state": current.value, "to_state": proposed.value},
            **kwargs,
        )
        self.current, self.proposed = current, proposed


class ConversationStateMachine:
    """Validates proposed transitions against the fixed state graph."""

    def __init__(self, transitions: Mapping[ConversationState, frozenset[ConversationState]] | None = None) -> None:
        self._transitions = transitions or ALLOWED_TRANSITIONS

    def can_transition(self, current: ConversationState, proposed: ConversationState) -> bool:
        return proposed in self._transitions.get(current, frozenset())

    def allowed_targets(self, current: ConversationState) -> frozenset[ConversationState]:
        return self._transitions.get(current, frozenset())

    def next_state(self, current: ConversationState, proposed: ConversationState) -> ConversationState:
        """Return ``proposed`` unchanged when legal; otherwise raise."""
        if not self.can_transition(current, proposed):
            raise InvalidStateTransitionError(current, proposed)
        return proposed

    def transition(self, current: ConversationState, proposed: ConversationState, reason: str = "") -> StateTransition:
        return StateTransition(from_state=current, to_state=self.next_state(current, proposed), reason=reason)


class StateTransitionService:
    """Decides which state to propose from risk, analysis and the plan's goals."""

    def __init__(self, machine: ConversationStateMachine | None = None) -> None:
        self._machine = machine or ConversationStateMachine()

    @property
    def machine(self) -> ConversationStateMachine:
        return self._machine

    def propose(self, current: ConversationState, latest_risk: RiskAssessment | None,
                analysis: AnalysisResult | None, plan_version: PlanVersion | None) -> tuple[ConversationState, str]:
        if latest_risk is not None and latest_risk.level == RiskLevel.CRITICAL:
            return S.EMERGENCY_INTERVENTION, "critical_risk"
        goal = plan_version.content.find_goal(analysis.next_goal) if plan_version and analysis else None
        if goal is not None:
            return goal.state, f"goal:{goal.codename}"
        return current, "no_goal_change"

    def decide(self, current: ConversationState, latest_risk: RiskAssessment | None,
               analysis: AnalysisResult | None, plan_version: PlanVersion | None) -> StateTransition:
        """Propose and validate; raises InvalidStateTransitionError on an illegal proposal."""
        proposed, reason = self.propose(current, latest_risk, analysis, plan_version)
        transition = self._machine.transition(current, proposed, reason)
        logger.debug("state_transition_decided", from_state=current.value, to_state=proposed.value, reason=reason)
        return transition
