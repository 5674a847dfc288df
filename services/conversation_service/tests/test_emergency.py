"""
Unit tests for the emergency path, contextual analysis and therapist replies.
Tests gateway-backed generation and the deterministic fallbacks of each stage.
"""
from __future__ import annotations
from uuid import uuid4

import pytest

from services.conversation_service.src.domain.analysis import FALLBACK_ANALYSIS, ContextAnalyzer
from services.conversation_service.src.domain.emergency import (
    FALLBACK_ACTIONS, CrisisResourceDirectory, EmergencyResponder, calculate_urgency,
)
from services.conversation_service.src.domain.entities import Message, RiskAssessment
from services.conversation_service.src.domain.models import AnalysisResult, ConversationContext
from services.conversation_service.src.domain.prompts import PromptTask
from services.conversation_service.src.domain.response_generator import (
    FALLBACK_MESSAGES, FALLBACK_TECHNIQUES, TherapistResponseGenerator, fallback_response,
)
from services.conversation_service.src.schemas import ConversationState, RiskLevel
from services.conversation_service.tests.fixtures import (
    EMERGENCY_REPLY, THERAPIST_REPLY, ScriptedGateway, make_context,
)
from services.shared.infrastructure import LLMError, RateLimitError


def critical_risk(*factors: str) -> RiskAssessment:
    return RiskAssessment(conversation_id=uuid4(), level=RiskLevel.CRITICAL, score=0.95,
                          factors=factors, immediate_action=True)


def _crisis_context(text: str = "I can't keep going like this") -> tuple[ConversationContext, Message]:
    context = make_context()
    return context, Message.from_user(context.conversation_id, text)


class TestUrgency:
    """Tests for urgency scoring."""

    def test_base_by_level(self) -> None:
        assert calculate_urgency(RiskLevel.LOW, []) == pytest.approx(0.2)
        assert calculate_urgency(RiskLevel.MEDIUM, ["sadness"]) == pytest.approx(0.5)

    def test_urgent_factors_raise_urgency(self) -> None:
        assert calculate_urgency(RiskLevel.HIGH, ["self_harm", "violence"]) == pytest.approx(0.96)

    def test_capped_at_one(self) -> None:
        assert calculate_urgency(RiskLevel.CRITICAL, ["suicidal_ideation"]) == 1.0


class TestCrisisResourceDirectory:
    """Tests for crisis resource lookup."""

    def test_helpline_always_first(self) -> None:
        directory = CrisisResourceDirectory("988")
        resources = directory.find_by_risk_factors([])
        assert [r.contact for r in resources] == ["988"]

    def test_factor_specific_resources_deduplicated(self) -> None:
        directory = CrisisResourceDirectory("988")
        resources = directory.find_by_risk_factors(["violence", "immediate_danger", "self_harm", "unknown"])
        assert [r.contact for r in resources] == ["988", "911", "Text HOME to 741741"]


class TestEmergencyResponder:
    """Tests for the crisis reply path."""

    @pytest.mark.asyncio
    async def test_generated_reply(self) -> None:
        responder = EmergencyResponder(ScriptedGateway())
        response = await responder.respond(critical_risk("suicidal_ideation"), *_crisis_context())
        assert response.content == EMERGENCY_REPLY["content"]
        assert response.required_actions == ("contact_crisis_line",)
        assert response.safety_plan == ("stay with someone you trust",)
        assert response.urgency == 1.0
        assert not response.is_fallback

    @pytest.mark.asyncio
    async def test_hotline_appended_when_missing(self) -> None:
        gateway = ScriptedGateway({PromptTask.EMERGENCY: {"content": "Please stay where you are safe."}})
        response = await EmergencyResponder(gateway, hotline="112").respond(critical_risk(), *_crisis_context())
        assert response.content.startswith("Please stay where you are safe.")
        assert "112" in response.content

    @pytest.mark.asyncio
    async def test_gateway_failure_falls_back(self) -> None:
        gateway = ScriptedGateway({PromptTask.EMERGENCY: LLMError("down", provider="test")})
        response = await EmergencyResponder(gateway).respond(critical_risk("self_harm"), *_crisis_context())
        assert response.is_fallback
        assert "988" in response.content
        assert response.required_actions == FALLBACK_ACTIONS
        assert [r["contact"] for r in response.resources] == ["988", "Text HOME to 741741"]

    @pytest.mark.asyncio
    async def test_malformed_reply_falls_back_after_retry(self) -> None:
        gateway = ScriptedGateway({PromptTask.EMERGENCY: "not json at all"})
        response = await EmergencyResponder(gateway, format_retries=1).respond(critical_risk(), *_crisis_context())
        assert response.is_fallback
        assert gateway.count(PromptTask.EMERGENCY) == 2

    @pytest.mark.asyncio
    async def test_prompt_carries_crisis_message(self) -> None:
        gateway = ScriptedGateway()
        context, message = _crisis_context("I have the pills in my hand")
        await EmergencyResponder(gateway).respond(critical_risk("self_harm"), context, message)
        [prompt] = gateway.prompts_for(PromptTask.EMERGENCY)
        assert "I have the pills in my hand" in prompt

    def test_spanish_fallback(self) -> None:
        response = EmergencyResponder(ScriptedGateway()).fallback(critical_risk(), language="es-MX")
        assert response.content.startswith("Me preocupa")
        assert "988" in response.content


class TestContextAnalyzer:
    """Tests for contextual analysis."""

    @pytest.mark.asyncio
    async def test_analysis_reply(self) -> None:
        context = make_context()
        message = Message.from_user(context.conversation_id, "I have been stressed at work")
        result = await ContextAnalyzer(ScriptedGateway()).analyze(message, context)
        assert result == AnalysisResult(next_goal="starting", language="en", should_be_revised=False,
                                        reason="building rapport")

    @pytest.mark.asyncio
    async def test_empty_goal_normalized(self) -> None:
        gateway = ScriptedGateway({PromptTask.ANALYSIS: {"nextGoal": "", "language": "", "shouldBeRevised": True}})
        context = make_context()
        result = await ContextAnalyzer(gateway).analyze(Message.from_user(context.conversation_id, "hi"), context)
        assert result.next_goal is None
        assert result.language == "en"
        assert result.should_be_revised

    @pytest.mark.asyncio
    async def test_failure_falls_back(self) -> None:
        gateway = ScriptedGateway({PromptTask.ANALYSIS: RateLimitError("slow down", provider="test")})
        context = make_context()
        result = await ContextAnalyzer(gateway).analyze(Message.from_user(context.conversation_id, "hi"), context)
        assert result is FALLBACK_ANALYSIS
        assert result.is_fallback


class TestTherapistResponseGenerator:
    """Tests for therapist reply generation."""

    @pytest.mark.asyncio
    async def test_generated_reply(self) -> None:
        context = make_context()
        response = await TherapistResponseGenerator(ScriptedGateway()).generate(
            Message.from_user(context.conversation_id, "work is a lot"), context, AnalysisResult(next_goal="starting"))
        assert response.content == THERAPIST_REPLY["content"]
        assert response.insights == ("user opened up about work stress",)
        assert response.suggested_techniques == ("reflection",)
        assert not response.is_fallback

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", list(ConversationState))
    async def test_fallback_per_state(self, state: ConversationState) -> None:
        gateway = ScriptedGateway({PromptTask.THERAPIST: LLMError("down", provider="test")})
        context = make_context(state=state)
        response = await TherapistResponseGenerator(gateway).generate(
            Message.from_user(context.conversation_id, "hello"), context, AnalysisResult())
        assert response.content == FALLBACK_MESSAGES[state]
        assert response.suggested_techniques == FALLBACK_TECHNIQUES
        assert response.is_fallback

    def test_every_state_has_fallback(self) -> None:
        assert all(fallback_response(state).content for state in ConversationState)
