"""
Unit tests for Therapeutic Plan Version Control.
Tests the version chain, consistency checks, validation scoring and rollback.
"""
from __future__ import annotations
import copy
from uuid import uuid4

import pytest

from haven_common.exceptions import EntityNotFoundError, InvariantViolationError
from services.conversation_service.src.domain.entities import Message, PlanVersion, RiskAssessment, TherapeuticPlan
from services.conversation_service.src.domain.models import ConversationContext
from services.conversation_service.src.domain.plan_versioning import PlanConsistencyError, PlanVersionControl
from services.conversation_service.src.domain.prompts import PromptTask
from services.conversation_service.src.domain.value_objects import (
    FormatError, PlanContent, PlanGoal, parse_plan_content,
)
from services.conversation_service.src.schemas import ConversationState, RiskLevel
from services.conversation_service.tests.fixtures import REVISED_PLAN, ScriptedGateway, make_context
from services.shared.infrastructure import ContentFormatError


def _assert_dense_chain(plan: TherapeuticPlan) -> None:
    chain = plan.chain()
    for i, version in enumerate(chain):
        assert version.version == i + 1
        if i == 0:
            assert version.previous_version_id is None
        else:
            assert version.previous_version_id == chain[i - 1].version_id


def _message(context: ConversationContext, text: str = "the breathing exercises are not helping") -> Message:
    return Message.from_user(context.conversation_id, text)


def _dropping_plan() -> dict:
    revised = copy.deepcopy(REVISED_PLAN)
    revised["goals"] = [g for g in revised["goals"] if g["codename"] != "starting"]
    return revised


def _without_coping() -> dict:
    revised = copy.deepcopy(REVISED_PLAN)
    revised["goals"] = [g for g in revised["goals"] if g["codename"] != "coping"]
    return revised


class TestInitialVersion:
    """Tests for the seed version."""

    def test_create_initial(self) -> None:
        version = PlanVersionControl(ScriptedGateway()).create_initial(uuid4())
        assert version.version == 1
        assert version.previous_version_id is None
        assert version.validation_score == 1.0
        assert version.content.goal_codenames == {"starting"}
        assert version.content.goals[0].state == ConversationState.INFO_GATHERING
        assert version.content.techniques == ["active listening", "empathy"]


class TestRevise:
    """Tests for gateway-backed revisions."""

    @pytest.mark.asyncio
    async def test_revision_appends_version(self) -> None:
        control = PlanVersionControl(ScriptedGateway())
        context = make_context()
        plan = context.plan
        version = await control.revise(plan, context, _message(context))
        assert version.version == 2
        assert plan.current_version_id == version.version_id
        assert version.content.focus == "work stress"
        assert version.content.find_goal("coping").state == ConversationState.ACTIVE_GUIDANCE
        assert version.validation_score == 1.0

    @pytest.mark.asyncio
    async def test_chain_stays_dense(self) -> None:
        control = PlanVersionControl(ScriptedGateway())
        context = make_context()
        for _ in range(4):
            await control.revise(context.plan, context, _message(context))
        assert len(context.plan.chain()) == 5
        _assert_dense_chain(context.plan)

    @pytest.mark.asyncio
    async def test_dropping_goal_rejected(self) -> None:
        control = PlanVersionControl(ScriptedGateway({PromptTask.PLAN_REVISION: _dropping_plan()}))
        context = make_context()
        before = context.plan.current_version_id
        with pytest.raises(PlanConsistencyError) as exc_info:
            await control.revise(context.plan, context, _message(context))
        assert exc_info.value.dropped_goals == ["starting"]
        assert context.plan.current_version_id == before
        assert len(context.plan.chain()) == 1

    @pytest.mark.asyncio
    async def test_completed_goal_may_be_dropped(self) -> None:
        revised = _dropping_plan()
        revised["metrics"]["completedGoals"] = ["starting"]
        control = PlanVersionControl(ScriptedGateway({PromptTask.PLAN_REVISION: revised}))
        context = make_context()
        version = await control.revise(context.plan, context, _message(context))
        assert version.version == 2
        assert "starting" not in version.content.goal_codenames

    @pytest.mark.asyncio
    async def test_missing_fields_are_format_errors(self) -> None:
        invalid = {k: v for k, v in REVISED_PLAN.items() if k != "techniques"}
        gateway = ScriptedGateway({PromptTask.PLAN_REVISION: invalid})
        context = make_context()
        with pytest.raises(ContentFormatError):
            await PlanVersionControl(gateway, format_retries=1).revise(context.plan, context, _message(context))
        assert gateway.count(PromptTask.PLAN_REVISION) == 2
        assert len(context.plan.chain()) == 1

    @pytest.mark.asyncio
    async def test_revision_after_rollback_chains_from_head(self) -> None:
        control = PlanVersionControl(ScriptedGateway())
        context = make_context()
        first = context.plan.current_version
        await control.revise(context.plan, context, _message(context))
        head = await control.revise(context.plan, context, _message(context))
        control.rollback(context.plan, first.version_id)
        latest = await control.revise(context.plan, context, _message(context))
        assert latest.version == 4
        assert latest.previous_version_id == head.version_id
        _assert_dense_chain(context.plan)
        kept = latest.content.goal_codenames | set(latest.content.metrics.completed_goals)
        assert head.content.goal_codenames <= kept

    @pytest.mark.asyncio
    async def test_revision_after_rollback_keeps_head_goals(self) -> None:
        gateway = ScriptedGateway({PromptTask.PLAN_REVISION: [REVISED_PLAN, _without_coping()]})
        control = PlanVersionControl(gateway)
        context = make_context()
        first = context.plan.current_version
        head = await control.revise(context.plan, context, _message(context))
        control.rollback(context.plan, first.version_id)
        with pytest.raises(PlanConsistencyError) as exc_info:
            await control.revise(context.plan, context, _message(context))
        assert exc_info.value.dropped_goals == ["coping"]
        assert context.plan.latest_version is head
        assert context.plan.current_version_id == first.version_id

    @pytest.mark.asyncio
    async def test_prompt_carries_triggering_message(self) -> None:
        gateway = ScriptedGateway()
        context = make_context()
        message = _message(context, "this plan is not working for me")
        await PlanVersionControl(gateway).revise(context.plan, context, message)
        [prompt] = gateway.prompts_for(PromptTask.PLAN_REVISION)
        assert "this plan is not working for me" in prompt


class TestConsistencyCheck:
    """Tests for the goal preservation rule."""

    def test_preserved_goals_pass(self) -> None:
        previous = PlanVersionControl.initial_content()
        revised = parse_plan_content(REVISED_PLAN)
        assert isinstance(revised, PlanContent)
        PlanVersionControl.check_consistency(uuid4(), previous, revised)

    def test_dropped_goal_listed(self) -> None:
        previous = parse_plan_content(REVISED_PLAN)
        revised = parse_plan_content(_dropping_plan())
        assert isinstance(previous, PlanContent) and isinstance(revised, PlanContent)
        with pytest.raises(PlanConsistencyError) as exc_info:
            PlanVersionControl.check_consistency(uuid4(), previous, revised)
        assert exc_info.value.details["dropped_goals"] == ["starting"]


class TestValidationScore:
    """Tests for validation scoring."""

    def test_clean_plan_scores_full(self) -> None:
        content = parse_plan_content(REVISED_PLAN)
        assert PlanVersionControl(ScriptedGateway()).score(content) == 1.0

    def test_penalties_accumulate(self) -> None:
        content = PlanContent(
            goals=[PlanGoal(codename="a", state=ConversationState.INFO_GATHERING),
                   PlanGoal(codename="a", state=ConversationState.ACTIVE_GUIDANCE, approach="x")],
            techniques=["listening"], approach="supportive",
        )
        # missing approach 0.1, duplicate codenames 0.2, missing focus 0.1
        assert PlanVersionControl(ScriptedGateway()).score(content) == pytest.approx(0.6)

    def test_unreflected_risk_penalized(self) -> None:
        conversation_id = uuid4()
        risk = RiskAssessment(conversation_id=conversation_id, level=RiskLevel.HIGH, score=0.7)
        context = make_context(conversation_id=conversation_id, risk_history=(risk,))
        content = parse_plan_content(REVISED_PLAN)
        assert PlanVersionControl(ScriptedGateway()).score(content, context) == pytest.approx(0.8)

    def test_low_score_requires_review(self) -> None:
        version = PlanVersion(plan_id=uuid4(), version=1, content=PlanVersionControl.initial_content(),
                              validation_score=0.6)
        assert version.requires_human_review(0.7)
        assert not version.requires_human_review(0.5)


class TestPlanEntity:
    """Tests for the plan aggregate's own guards."""

    def test_broken_chain_rejected(self) -> None:
        plan = TherapeuticPlan.create(uuid4(), PlanVersionControl.initial_content())
        stray = PlanVersion(plan_id=plan.plan_id, version=3, content=PlanVersionControl.initial_content(),
                            previous_version_id=plan.current_version_id)
        with pytest.raises(InvariantViolationError):
            plan.append_version(stray)

    def test_rollback_to_unknown_version(self) -> None:
        plan = TherapeuticPlan.create(uuid4(), PlanVersionControl.initial_content())
        with pytest.raises(EntityNotFoundError):
            plan.rollback_to_version(uuid4())

    def test_parse_rejects_non_object(self) -> None:
        result = parse_plan_content(["not", "a", "plan"])
        assert isinstance(result, FormatError)

    def test_parse_reports_field_errors(self) -> None:
        result = parse_plan_content({"goals": [], "techniques": [], "approach": ""})
        assert isinstance(result, FormatError)
        assert any(e.startswith("goals") for e in result.errors)
