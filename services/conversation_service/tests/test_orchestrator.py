"""
Unit tests for the Message Processing Orchestrator.
Tests stage ordering, the emergency short-circuit and per-stage fallbacks.
"""
from __future__ import annotations

import pytest

from services.conversation_service.src.domain.entities import Message
from services.conversation_service.src.domain.orchestrator import EMERGENCY_TECHNIQUES, PipelineStage
from services.conversation_service.src.domain.prompts import PromptTask
from services.conversation_service.src.domain.response_generator import FALLBACK_MESSAGES
from services.conversation_service.src.domain.risk_assessor import RiskAssessmentError
from services.conversation_service.src.domain.value_objects import PlanContent, PlanGoal
from services.conversation_service.src.events import NotificationType
from services.conversation_service.src.infrastructure.notifier import RecordingNotifier
from services.conversation_service.src.schemas import ConversationState, RiskLevel
from services.conversation_service.tests.fixtures import (
    IMMEDIATE_CRISIS, REVISE_ANALYSIS, ScriptedGateway, build_orchestrator, make_context,
)
from services.shared.infrastructure import LLMError

S = ConversationState


def _message(context, text: str = "I had a rough week at work") -> Message:
    return Message.from_user(context.conversation_id, text)


class TestStandardPath:
    """Tests for non-emergency processing."""

    @pytest.mark.asyncio
    async def test_first_message(self, gateway: ScriptedGateway) -> None:
        context = make_context()
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.risk_level == RiskLevel.LOW
        assert result.state_transition.from_state == S.INFO_GATHERING
        assert result.state_transition.to_state == S.INFO_GATHERING
        assert result.plan_version is None
        assert not result.is_emergency
        assert result.response.content.startswith("Thank you for telling me")
        assert result.response.suggested_techniques == ("reflection",)
        assert result.degraded_stages == ()

    @pytest.mark.asyncio
    async def test_stage_order(self, gateway: ScriptedGateway) -> None:
        context = make_context()
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.metadata["stages"] == [
            PipelineStage.START.value, PipelineStage.RISK_CHECK.value, PipelineStage.ANALYSIS.value,
            PipelineStage.STATE_DECISION.value, PipelineStage.RESPONSE_GENERATION.value,
            PipelineStage.PLAN_REVISION.value, PipelineStage.PROGRESS_METRICS.value, PipelineStage.DONE.value,
        ]

    @pytest.mark.asyncio
    async def test_goal_moves_state(self, gateway: ScriptedGateway) -> None:
        content = PlanContent(
            goals=[PlanGoal(codename="starting", state=S.INFO_GATHERING, approach="listen"),
                   PlanGoal(codename="coping", state=S.ACTIVE_GUIDANCE, approach="breathing")],
            techniques=["breathing"], approach="supportive",
        )
        gateway.set(PromptTask.ANALYSIS, {"nextGoal": "coping", "shouldBeRevised": False})
        context = make_context(content=content)
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.state_transition.to_state == S.ACTIVE_GUIDANCE
        assert result.state_transition.reason == "goal:coping"

    @pytest.mark.asyncio
    async def test_illegal_goal_keeps_state(self, gateway: ScriptedGateway) -> None:
        content = PlanContent(
            goals=[PlanGoal(codename="wrap_up", state=S.SESSION_CLOSING, approach="summarize")],
            techniques=["summary"], approach="closing",
        )
        gateway.set(PromptTask.ANALYSIS, {"nextGoal": "wrap_up"})
        context = make_context(content=content)
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.state_transition.from_state == result.state_transition.to_state == S.INFO_GATHERING
        assert result.state_transition.reason == "transition_rejected"
        assert "state_decision" in result.degraded_stages

    @pytest.mark.asyncio
    async def test_plan_revision_on_working_copy(self, gateway: ScriptedGateway,
                                                 notifier: RecordingNotifier) -> None:
        gateway.set(PromptTask.ANALYSIS, REVISE_ANALYSIS)
        context = make_context()
        original_version_id = context.plan.current_version_id
        message = _message(context, "this plan is not helping me at all")
        result = await build_orchestrator(gateway, notifier).process(context, message)
        assert result.plan_version is not None
        assert result.plan_version.version == 2
        assert result.plan_version.previous_version_id == original_version_id
        assert context.plan.current_version_id == original_version_id
        assert len(context.plan.chain()) == 1
        assert len(notifier.of_type(NotificationType.REVISING_PLAN)) == 1
        [prompt] = gateway.prompts_for(PromptTask.PLAN_REVISION)
        assert message.content in prompt

    @pytest.mark.asyncio
    async def test_composing_notification(self, gateway: ScriptedGateway, notifier: RecordingNotifier) -> None:
        context = make_context()
        await build_orchestrator(gateway, notifier).process(context, _message(context))
        events = notifier.of_type(NotificationType.COMPOSING_RESPONSE)
        assert len(events) == 1
        assert events[0].conversation_id == context.conversation_id

    @pytest.mark.asyncio
    async def test_progress_calculated(self, gateway: ScriptedGateway) -> None:
        context = make_context()
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.progress.breakthroughs == ("user opened up about work stress",)
        assert 0.0 <= result.progress.score <= 1.0


class TestEmergencyPath:
    """Tests for the CRITICAL-risk short-circuit."""

    @pytest.mark.asyncio
    async def test_critical_skips_downstream(self, gateway: ScriptedGateway, notifier: RecordingNotifier) -> None:
        gateway.set(PromptTask.CRISIS_SCAN, IMMEDIATE_CRISIS)
        context = make_context()
        orchestrator = build_orchestrator(gateway, notifier, speculative_analysis=False)
        result = await orchestrator.process(context, _message(context, "I don't want to be here anymore"))
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.is_emergency
        assert result.analysis is None
        assert result.plan_version is None
        assert result.state_transition.to_state == S.EMERGENCY_INTERVENTION
        assert result.response.suggested_techniques == EMERGENCY_TECHNIQUES
        assert gateway.count(PromptTask.ANALYSIS) == 0
        assert gateway.count(PromptTask.THERAPIST) == 0
        assert gateway.count(PromptTask.PLAN_REVISION) == 0
        assert gateway.count(PromptTask.EMERGENCY) == 1
        assert PipelineStage.ANALYSIS.value not in result.metadata["stages"]
        assert PipelineStage.EMERGENCY_PATH.value in result.metadata["stages"]
        assert len(notifier.of_type(NotificationType.EMERGENCY_ESCALATED)) == 1
        [prompt] = gateway.prompts_for(PromptTask.EMERGENCY)
        assert "I don't want to be here anymore" in prompt

    @pytest.mark.asyncio
    async def test_speculative_analysis_discarded(self, gateway: ScriptedGateway) -> None:
        gateway.set(PromptTask.CRISIS_SCAN, IMMEDIATE_CRISIS)
        gateway.set(PromptTask.ANALYSIS, REVISE_ANALYSIS)
        context = make_context()
        result = await build_orchestrator(gateway, speculative_analysis=True).process(context, _message(context))
        assert result.analysis is None
        assert result.plan_version is None
        assert gateway.count(PromptTask.PLAN_REVISION) == 0
        assert gateway.count(PromptTask.THERAPIST) == 0

    @pytest.mark.asyncio
    async def test_emergency_reply_mentions_hotline(self, gateway: ScriptedGateway) -> None:
        gateway.set(PromptTask.CRISIS_SCAN, IMMEDIATE_CRISIS)
        gateway.set(PromptTask.EMERGENCY, {"content": "I'm here with you.", "requiredActions": []})
        context = make_context()
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert "988" in result.response.content
        assert result.emergency is not None
        assert result.emergency.resources[0]["contact"] == "988"

    @pytest.mark.asyncio
    async def test_emergency_gateway_failure_uses_helpline_fallback(self, gateway: ScriptedGateway) -> None:
        gateway.set(PromptTask.CRISIS_SCAN, IMMEDIATE_CRISIS)
        gateway.set(PromptTask.EMERGENCY, LLMError("down", provider="test"))
        context = make_context()
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.emergency is not None and result.emergency.is_fallback
        assert "988" in result.response.content
        assert result.degraded_stages == ("emergency_response",)

    @pytest.mark.asyncio
    async def test_emergency_from_guidance(self, gateway: ScriptedGateway) -> None:
        gateway.set(PromptTask.CRISIS_SCAN, IMMEDIATE_CRISIS)
        context = make_context(state=S.ACTIVE_GUIDANCE)
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.state_transition.from_state == S.ACTIVE_GUIDANCE
        assert result.state_transition.to_state == S.EMERGENCY_INTERVENTION


class TestFailurePolicy:
    """Tests for stage failure handling."""

    @pytest.mark.asyncio
    async def test_risk_failure_propagates(self, gateway: ScriptedGateway) -> None:
        gateway.set(PromptTask.CRISIS_SCAN, LLMError("timeout", provider="test", retryable=True))
        context = make_context()
        with pytest.raises(RiskAssessmentError):
            await build_orchestrator(gateway).process(context, _message(context))
        assert gateway.count(PromptTask.THERAPIST) == 0

    @pytest.mark.asyncio
    async def test_response_failure_falls_back(self, gateway: ScriptedGateway) -> None:
        gateway.set(PromptTask.THERAPIST, LLMError("down", provider="test"))
        context = make_context()
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.response.is_fallback
        assert result.response.content == FALLBACK_MESSAGES[S.INFO_GATHERING]
        assert "response_generation" in result.degraded_stages

    @pytest.mark.asyncio
    async def test_analysis_failure_falls_back(self, gateway: ScriptedGateway) -> None:
        gateway.set(PromptTask.ANALYSIS, "no json here")
        context = make_context()
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.analysis is not None and result.analysis.is_fallback
        assert result.state_transition.to_state == S.INFO_GATHERING
        assert "analysis" in result.degraded_stages

    @pytest.mark.asyncio
    async def test_plan_failure_keeps_pipeline(self, gateway: ScriptedGateway) -> None:
        gateway.set(PromptTask.ANALYSIS, REVISE_ANALYSIS)
        gateway.set(PromptTask.PLAN_REVISION, {"goals": [], "techniques": [], "approach": ""})
        context = make_context()
        result = await build_orchestrator(gateway).process(context, _message(context))
        assert result.plan_version is None
        assert "plan_revision" in result.degraded_stages
        assert not result.response.is_fallback

    @pytest.mark.asyncio
    async def test_notifier_failure_ignored(self, gateway: ScriptedGateway) -> None:
        class BrokenNotifier(RecordingNotifier):
            async def publish(self, event) -> None:
                raise RuntimeError("channel offline")

        context = make_context()
        result = await build_orchestrator(gateway, BrokenNotifier()).process(context, _message(context))
        assert not result.response.is_fallback

    @pytest.mark.asyncio
    async def test_stats(self, gateway: ScriptedGateway) -> None:
        orchestrator = build_orchestrator(gateway)
        context = make_context()
        await orchestrator.process(context, _message(context))
        gateway.set(PromptTask.CRISIS_SCAN, IMMEDIATE_CRISIS)
        await orchestrator.process(context, _message(context))
        assert orchestrator.stats["messages_processed"] == 2
        assert orchestrator.stats["emergencies"] == 1
