"""
Test fixtures for Haven Conversation Service.
Scripted inference gateway and builders for pipeline collaborators.
"""
from __future__ import annotations
import json
from typing import Any, Callable
from uuid import UUID, uuid4

from services.conversation_service.src.domain.analysis import ContextAnalyzer
from services.conversation_service.src.domain.emergency import EmergencyResponder
from services.conversation_service.src.domain.entities import TherapeuticPlan
from services.conversation_service.src.domain.models import ConversationContext
from services.conversation_service.src.domain.orchestrator import MessageProcessingOrchestrator
from services.conversation_service.src.domain.plan_versioning import PlanVersionControl
from services.conversation_service.src.domain.prompts import PromptTask
from services.conversation_service.src.domain.response_generator import TherapistResponseGenerator
from services.conversation_service.src.domain.risk_assessor import RiskAssessmentEngine
from services.conversation_service.src.domain.state_machine import StateTransitionService
from services.conversation_service.src.domain.value_objects import PlanContent
from services.conversation_service.src.infrastructure.notifier import RecordingNotifier
from services.conversation_service.src.schemas import ConversationState
from services.shared.infrastructure import CompletionOptions

CALM_SENTIMENT = {"score": 0.7, "primaryEmotion": "calm", "emotionalIntensity": 0.3, "reason": "neutral tone"}
NO_CRISIS = {"identifiedPatterns": [], "overallSeverity": 0.0, "requiresImmediateAction": False}
IMMEDIATE_CRISIS = {"identifiedPatterns": ["suicidal_ideation"], "overallSeverity": 0.5,
                    "requiresImmediateAction": True}
STAY_ANALYSIS = {"nextGoal": "starting", "language": "en", "shouldBeRevised": False, "reason": "building rapport"}
REVISE_ANALYSIS = {"nextGoal": "starting", "language": "en", "shouldBeRevised": True, "reason": "new information"}
THERAPIST_REPLY = {"content": "Thank you for telling me. What has been on your mind most today?",
                   "insights": ["user opened up about work stress"], "suggestedTechniques": ["reflection"]}
EMERGENCY_REPLY = {"content": "I'm really glad you told me. Your safety matters right now. Please call 988.",
                   "requiredActions": ["contact_crisis_line"], "safetyPlan": ["stay with someone you trust"]}
REVISED_PLAN = {
    "goals": [
        {"codename": "starting", "state": "INFO_GATHERING", "content": "get to know the person",
         "approach": "open questions"},
        {"codename": "coping", "state": "active_guidance", "content": "practice coping skills",
         "approach": "guided breathing"},
    ],
    "techniques": ["breathing", "reflection"],
    "approach": "supportive and structured",
    "focus": "work stress",
    "riskFactors": [],
    "metrics": {"completedGoals": [], "progress": "early"},
}

DEFAULT_REPLIES: dict[PromptTask, Any] = {
    PromptTask.SENTIMENT: CALM_SENTIMENT,
    PromptTask.CRISIS_SCAN: NO_CRISIS,
    PromptTask.ANALYSIS: STAY_ANALYSIS,
    PromptTask.THERAPIST: THERAPIST_REPLY,
    PromptTask.PLAN_REVISION: REVISED_PLAN,
    PromptTask.EMERGENCY: EMERGENCY_REPLY,
}


class ScriptedGateway:
    """
    Inference gateway fake that routes prompts by their task header.

    A reply may be a dict (sent as JSON), a raw string, an exception instance
    (raised), a callable taking the prompt, or a list consumed in order with
    the last entry repeating.
    """

    def __init__(self, replies: dict[PromptTask, Any] | None = None) -> None:
        self._replies: dict[PromptTask, Any] = {**DEFAULT_REPLIES, **(replies or {})}
        self.calls: list[PromptTask] = []
        self.prompts: list[tuple[PromptTask, str]] = []

    def set(self, task: PromptTask, reply: Any) -> None:
        self._replies[task] = reply

    def count(self, task: PromptTask) -> int:
        return self.calls.count(task)

    def prompts_for(self, task: PromptTask) -> list[str]:
        return [prompt for t, prompt in self.prompts if t == task]

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        task = next(t for t in PromptTask if prompt.startswith(t.header))
        self.calls.append(task)
        self.prompts.append((task, prompt))
        reply = self._replies[task]
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if callable(reply) and not isinstance(reply, type):
            reply = reply(prompt)
        if isinstance(reply, BaseException):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)


def crisis_when(trigger: str) -> Callable[[str], dict[str, Any]]:
    """Crisis-scan reply that flags immediate action when the prompt contains ``trigger``."""
    def reply(prompt: str) -> dict[str, Any]:
        return IMMEDIATE_CRISIS if trigger in prompt else NO_CRISIS
    return reply


def build_orchestrator(gateway: ScriptedGateway, notifier: RecordingNotifier | None = None, *,
                       speculative_analysis: bool = True) -> MessageProcessingOrchestrator:
    return MessageProcessingOrchestrator(
        risk_engine=RiskAssessmentEngine(gateway),
        analyzer=ContextAnalyzer(gateway),
        state_service=StateTransitionService(),
        response_generator=TherapistResponseGenerator(gateway),
        plan_control=PlanVersionControl(gateway),
        emergency_responder=EmergencyResponder(gateway),
        notifier=notifier or RecordingNotifier(),
        speculative_analysis=speculative_analysis,
    )


def make_context(
    *,
    state: ConversationState = ConversationState.INFO_GATHERING,
    plan: TherapeuticPlan | None = None,
    content: PlanContent | None = None,
    history: tuple = (),
    risk_history: tuple = (),
    user_id: UUID | None = None,
    conversation_id: UUID | None = None,
) -> ConversationContext:
    user_id = user_id or uuid4()
    plan = plan or TherapeuticPlan.create(user_id, content or PlanVersionControl.initial_content())
    return ConversationContext(
        user_id=user_id, conversation_id=conversation_id or uuid4(), current_state=state, plan=plan,
        history=history, risk_history=risk_history,
    )
