"""
Haven Conversation Service - Response Generator.
Therapist replies from the inference gateway, with state-keyed fallbacks.
"""
from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
import structlog

from services.shared.infrastructure import (
    CompletionOptions, ContentFormatError, InferenceGateway, LLMError, complete_structured,
)
from ..schemas import ConversationState
from .entities import Message
from .models import AnalysisResult, ConversationContext, TherapeuticResponse
from .prompts import PromptTask, therapist_prompt

logger = structlog.get_logger(__name__)

FALLBACK_TECHNIQUES: tuple[str, ...] = ("active_listening", "validation")

FALLBACK_MESSAGES: dict[ConversationState, str] = {
    ConversationState.INFO_GATHERING:
        "I understand you're sharing something important. Could you tell me more about how that affected you?",
    ConversationState.ACTIVE_GUIDANCE:
        "I hear what you're saying. Let's take a moment to reflect on this together. "
        "How do you feel about this situation now?",
    ConversationState.PLAN_REVISION:
        "Your progress is important. Let's consider what's been working well and what might need adjustment.",
    ConversationState.EMERGENCY_INTERVENTION:
        "I'm here with you right now. Let's focus on what might help you feel safer in this moment.",
    ConversationState.SESSION_CLOSING:
        "Thank you for sharing your thoughts today. Would it help to summarize what we've discussed?",
}


class TherapistReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    content: str = Field(min_length=1)
    insights: list[str] = Field(default_factory=list)
    suggested_techniques: list[str] = Field(default_factory=list, alias="suggestedTechniques")


def fallback_response(state: ConversationState) -> TherapeuticResponse:
    """Canned supportive reply for the given state."""
    return TherapeuticResponse(content=FALLBACK_MESSAGES[state], suggested_techniques=FALLBACK_TECHNIQUES,
                               is_fallback=True)


class TherapistResponseGenerator:
    """Generates the therapeutic reply for a non-emergency message."""

    def __init__(self, gateway: InferenceGateway, *, format_retries: int = 1, model: str | None = None,
                 temperature: float = 0.7) -> None:
        self._gateway = gateway
        self._format_retries = format_retries
        self._options = CompletionOptions(model=model, temperature=temperature)

    async def generate(self, message: Message, context: ConversationContext,
                       analysis: AnalysisResult) -> TherapeuticResponse:
        try:
            reply = await complete_structured(self._gateway, therapist_prompt(context, analysis, message),
                                              TherapistReply.model_validate, options=self._options,
                                              format_retries=self._format_retries, task=PromptTask.THERAPIST.value)
        except (LLMError, ContentFormatError) as e:
            logger.warning("therapist_response_fallback", conversation_id=str(context.conversation_id),
                           state=context.current_state.value, error=str(e))
            return fallback_response(context.current_state)
        return TherapeuticResponse(content=reply.content.strip(), insights=tuple(reply.insights),
                                   suggested_techniques=tuple(reply.suggested_techniques))
