"""
Haven Conversation Service - Contextual Analysis.
Reads the message against the plan to pick the next goal and flag plan revisions.
"""
from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
import structlog

from services.shared.infrastructure import (
    CompletionOptions, ContentFormatError, InferenceGateway, LLMError, complete_structured,
)
from .entities import Message
from .models import AnalysisResult, ConversationContext
from .prompts import PromptTask, analysis_prompt

logger = structlog.get_logger(__name__)

FALLBACK_ANALYSIS = AnalysisResult(next_goal=None, language="en", should_be_revised=False,
                                   reason="analysis_unavailable", is_fallback=True)


class AnalysisReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    next_goal: str | None = Field(default=None, alias="nextGoal")
    language: str = "en"
    should_be_revised: bool = Field(default=False, alias="shouldBeRevised")
    reason: str = ""


class ContextAnalyzer:
    """Gateway-backed analysis with a deterministic fallback."""

    def __init__(self, gateway: InferenceGateway, *, format_retries: int = 1, model: str | None = None) -> None:
        self._gateway = gateway
        self._format_retries = format_retries
        self._options = CompletionOptions(model=model, temperature=0.3)

    async def analyze(self, message: Message, context: ConversationContext) -> AnalysisResult:
        prompt = analysis_prompt(message, context.plan_version, context.history, context.insights())
        try:
            reply = await complete_structured(self._gateway, prompt, AnalysisReply.model_validate,
                                              options=self._options, format_retries=self._format_retries,
                                              task=PromptTask.ANALYSIS.value)
        except (LLMError, ContentFormatError) as e:
            logger.warning("analysis_fallback", conversation_id=str(context.conversation_id), error=str(e))
            return FALLBACK_ANALYSIS
        return AnalysisResult(next_goal=reply.next_goal or None, language=reply.language or "en",
                              should_be_revised=reply.should_be_revised, reason=reply.reason)
