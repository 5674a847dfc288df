"""
Haven Conversation Service - Therapeutic Plan Version Control.
Seeds the first plan version and derives later versions through the inference
gateway, rejecting revisions that silently drop goals.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable
from uuid import UUID
import structlog

from haven_common.exceptions import BusinessRuleViolationError, ErrorContext, InvariantViolationError
from services.shared.infrastructure import (
    CompletionOptions, ContentFormatError, InferenceGateway, complete_structured,
)
from ..config import PlanSettings
from ..schemas import ConversationState, RiskLevel
from .entities import Message, PlanVersion, TherapeuticPlan
from .models import ConversationContext
from .prompts import PromptTask, plan_revision_prompt
from .value_objects import FormatError, PlanContent, PlanGoal, parse_plan_content

logger = structlog.get_logger(__name__)


class PlanConsistencyError(BusinessRuleViolationError):
    """A revision dropped goals without marking them complete."""
    error_code = "PLAN_CONSISTENCY_VIOLATION"

    def __init__(self, plan_id: UUID, dropped_goals: list[str], **kwargs: Any) -> None:
        super().__init__(
            "goals_preserved_or_completed",
            f"Revision drops goals without completing them: {', '.join(dropped_goals)}",
            details={"plan_id": str(plan_id), "dropped_goals": dropped_goals},
            **kwargs,
        )
        self.dropped_goals = dropped_goals


class MissingPlanVersionError(InvariantViolationError):
    """Revision requested on a plan without a current version."""
    error_code = "PLAN_VERSION_MISSING"


@dataclass(frozen=True)
class ValidationIssue:
    rule: str
    penalty: float


ValidationRule = Callable[[PlanContent, ConversationContext | None], list[ValidationIssue]]


def _goals_have_approach(content: PlanContent, _: ConversationContext | None) -> list[ValidationIssue]:
    return [ValidationIssue(f"goal_without_approach:{g.codename}", 0.1) for g in content.goals if not g.approach.strip()]


def _unique_codenames(content: PlanContent, _: ConversationContext | None) -> list[ValidationIssue]:
    codenames = [g.codename for g in content.goals]
    return [ValidationIssue("duplicate_goal_codenames", 0.2)] if len(codenames) != len(set(codenames)) else []


def _has_focus(content: PlanContent, _: ConversationContext | None) -> list[ValidationIssue]:
    return [] if content.focus and content.focus.strip() else [ValidationIssue("missing_focus", 0.1)]


def _risk_acknowledged(content: PlanContent, context: ConversationContext | None) -> list[ValidationIssue]:
    risk = context.latest_risk if context else None
    if risk is not None and risk.level >= RiskLevel.HIGH and not content.risk_factors:
        return [ValidationIssue("elevated_risk_not_reflected", 0.2)]
    return []


DEFAULT_VALIDATION_RULES: tuple[ValidationRule, ...] = (
    _goals_have_approach, _unique_codenames, _has_focus, _risk_acknowledged,
)


class PlanVersionControl:
    """Append-only plan version management."""

    def __init__(self, gateway: InferenceGateway, settings: PlanSettings | None = None, *,
                 format_retries: int = 1, rules: tuple[ValidationRule, ...] = DEFAULT_VALIDATION_RULES) -> None:
        self._gateway = gateway
        self._settings = settings or PlanSettings()
        self._format_retries = format_retries
        self._rules = rules

    @staticmethod
    def initial_content() -> PlanContent:
        """Deterministic seed: a single rapport-building goal."""
        return PlanContent(
            goals=[PlanGoal(
                codename="starting",
                state=ConversationState.INFO_GATHERING,
                content="greet user, get to know the person better",
                approach="establish contact, find out why user came",
                conditions="if conversation started",
            )],
            techniques=["active listening", "empathy"],
            approach="open-ended questions",
        )

    def create_initial(self, user_id: UUID) -> PlanVersion:
        """First version of a fresh plan for the user (version 1, no predecessor, score 1.0)."""
        plan = TherapeuticPlan.create(user_id, self.initial_content())
        version = plan.current_version
        if version is None:
            raise InvariantViolationError("Initial plan has no version")
        return version

    async def revise(self, plan: TherapeuticPlan, context: ConversationContext, message: Message) -> PlanVersion:
        """
        Derive, validate and append a new version; the plan's pointer advances.

        Raises MissingPlanVersionError, ContentFormatError or PlanConsistencyError;
        on any of them the plan is left untouched.
        """
        base = plan.current_version
        if base is None:
            raise MissingPlanVersionError(
                f"Plan {plan.plan_id} has no current version",
                context=ErrorContext(operation="plan_revision", user_id=str(plan.user_id)),
            )
        content = await complete_structured(
            self._gateway, plan_revision_prompt(context, base, message, self._settings.max_history_depth),
            self._parse_content,
            options=CompletionOptions(model=self._settings.revision_model,
                                      temperature=self._settings.revision_temperature,
                                      max_tokens=self._settings.revision_max_tokens),
            format_retries=self._format_retries, task=PromptTask.PLAN_REVISION.value,
        )
        self.check_consistency(plan.plan_id, base.content, content)
        head = plan.latest_version
        if head is not None and head.version_id != base.version_id:
            # the new version chains from the head, so the head's goals must survive too
            self.check_consistency(plan.plan_id, head.content, content)
        version = self.derive_version(plan, content, validation_score=self.score(content, context))
        plan.append_version(version)
        logger.info("plan_revised", plan_id=str(plan.plan_id), version=version.version,
                    validation_score=version.validation_score,
                    requires_review=version.requires_human_review(self._settings.review_threshold))
        return version

    @staticmethod
    def _parse_content(data: dict[str, Any]) -> PlanContent:
        parsed = parse_plan_content(data)
        if isinstance(parsed, FormatError):
            raise ContentFormatError(f"Invalid plan content: {parsed.reason}", task=PromptTask.PLAN_REVISION.value,
                                     details={"errors": list(parsed.errors)})
        return parsed

    @staticmethod
    def check_consistency(plan_id: UUID, previous: PlanContent, revised: PlanContent) -> None:
        """Every previous goal must survive or be listed in metrics.completedGoals."""
        kept = revised.goal_codenames | set(revised.metrics.completed_goals)
        dropped = sorted(codename for codename in previous.goal_codenames if codename not in kept)
        if dropped:
            raise PlanConsistencyError(plan_id, dropped)

    @staticmethod
    def derive_version(plan: TherapeuticPlan, content: PlanContent, validation_score: float) -> PlanVersion:
        head = plan.latest_version
        if head is None:
            raise MissingPlanVersionError(f"Plan {plan.plan_id} has no versions")
        return PlanVersion(plan_id=plan.plan_id, version=head.version + 1, content=content,
                           previous_version_id=head.version_id, validation_score=validation_score)

    def score(self, content: PlanContent, context: ConversationContext | None = None) -> float:
        issues = [issue for rule in self._rules for issue in rule(content, context)]
        if issues:
            logger.debug("plan_validation_issues", issues=[i.rule for i in issues])
        return round(max(0.0, 1.0 - sum(i.penalty for i in issues)), 4)

    @staticmethod
    def rollback(plan: TherapeuticPlan, version_id: UUID) -> PlanVersion:
        """Recovery only: re-point the current version to an existing one."""
        return plan.rollback_to_version(version_id)
