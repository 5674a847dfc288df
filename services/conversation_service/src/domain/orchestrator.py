"""
Haven Conversation Service - Message Processing Orchestrator.
Runs one user message through risk, analysis, state, response, plan and progress
stages and returns a single ProcessingResult. Performs no persistence.
"""
from __future__ import annotations
import asyncio
import contextlib
import copy
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
import structlog

from ..events import composing_response, emergency_escalated, revising_plan
from ..infrastructure.notifier import LoggingNotifier, Notifier
from ..schemas import RiskLevel
from .analysis import FALLBACK_ANALYSIS, ContextAnalyzer
from .emergency import EmergencyResponder
from .entities import Message, PlanVersion, RiskAssessment, StateTransition
from .models import AnalysisResult, ConversationContext, ProcessingResult, SessionProgress, TherapeuticResponse
from .plan_versioning import PlanVersionControl
from .progress import ProgressTracker
from .response_generator import TherapistResponseGenerator, fallback_response
from .risk_assessor import RiskAssessmentEngine
from .state_machine import InvalidStateTransitionError, StateTransitionService

logger = structlog.get_logger(__name__)
T = TypeVar("T")

EMERGENCY_TECHNIQUES: tuple[str, ...] = ("crisis_support", "safety_planning")


class PipelineStage(str, Enum):
    """Stages of a single pipeline run."""
    START = "START"
    RISK_CHECK = "RISK_CHECK"
    EMERGENCY_PATH = "EMERGENCY_PATH"
    ANALYSIS = "ANALYSIS"
    STATE_DECISION = "STATE_DECISION"
    RESPONSE_GENERATION = "RESPONSE_GENERATION"
    PLAN_REVISION = "PLAN_REVISION"
    PROGRESS_METRICS = "PROGRESS_METRICS"
    DONE = "DONE"


class MessageProcessingOrchestrator:
    """
    Top-level message pipeline.

    RISK_CHECK always completes before anything downstream is used. When
    ``speculative_analysis`` is on, ANALYSIS is issued alongside RISK_CHECK
    (it reads only the snapshot) and its result is discarded if risk is
    CRITICAL. A RISK_CHECK failure propagates; every other stage degrades to
    a deterministic fallback.
    """

    def __init__(
        self,
        *,
        risk_engine: RiskAssessmentEngine,
        analyzer: ContextAnalyzer,
        state_service: StateTransitionService,
        response_generator: TherapistResponseGenerator,
        plan_control: PlanVersionControl,
        emergency_responder: EmergencyResponder,
        progress_tracker: ProgressTracker | None = None,
        notifier: Notifier | None = None,
        speculative_analysis: bool = True,
    ) -> None:
        self._risk = risk_engine
        self._analyzer = analyzer
        self._state = state_service
        self._responder = response_generator
        self._plans = plan_control
        self._emergency = emergency_responder
        self._progress = progress_tracker or ProgressTracker()
        self._notifier = notifier or LoggingNotifier()
        self._speculative_analysis = speculative_analysis
        self._stats = {
            "messages_processed": 0,
            "emergencies": 0,
            "plan_revisions": 0,
            "degraded_stages": 0,
        }

    @property
    def stats(self) -> dict[str, int]:
        return self._stats

    async def process(self, context: ConversationContext, message: Message) -> ProcessingResult:
        stages: list[PipelineStage] = [PipelineStage.START, PipelineStage.RISK_CHECK]
        analysis_task: asyncio.Task[AnalysisResult] | None = None
        if self._speculative_analysis:
            analysis_task = asyncio.create_task(self._analyze(message, context))
        try:
            risk = await self._risk.assess(message.content, context.risk_history,
                                           conversation_id=context.conversation_id)
        except BaseException:
            await self._discard(analysis_task)
            raise
        self._stats["messages_processed"] += 1

        if risk.level == RiskLevel.CRITICAL:
            await self._discard(analysis_task)
            stages.append(PipelineStage.EMERGENCY_PATH)
            return await self._emergency_path(context, message, risk, stages)

        stages.append(PipelineStage.ANALYSIS)
        analysis = await analysis_task if analysis_task is not None else await self._analyze(message, context)

        stages.append(PipelineStage.STATE_DECISION)
        transition = self._decide_transition(context, risk, analysis)

        stages.extend([PipelineStage.RESPONSE_GENERATION, PipelineStage.PLAN_REVISION])
        await self._notifier.safe_publish(composing_response(context.user_id, context.conversation_id))
        response, plan_version = await asyncio.gather(
            self._guard("response_generation", self._responder.generate(message, context, analysis),
                        lambda: fallback_response(context.current_state)),
            self._revise_plan(context, message, analysis),
        )

        stages.append(PipelineStage.PROGRESS_METRICS)
        progress = self._calculate_progress(context, message, response)
        stages.append(PipelineStage.DONE)

        degraded = self._degraded(analysis, transition, response, plan_version)
        self._stats["degraded_stages"] += len(degraded)
        if plan_version is not None:
            self._stats["plan_revisions"] += 1
        logger.info("message_processed", conversation_id=str(context.conversation_id), risk_level=risk.level.value,
                    from_state=transition.from_state.value, to_state=transition.to_state.value,
                    plan_revised=plan_version is not None, degraded=list(degraded))
        return ProcessingResult(
            user_message=message, risk_assessment=risk, state_transition=transition, response=response,
            progress=progress, analysis=analysis, plan_version=plan_version, degraded_stages=degraded,
            metadata={"stages": [s.value for s in stages]},
        )

    async def _emergency_path(self, context: ConversationContext, message: Message, risk: RiskAssessment,
                              stages: list[PipelineStage]) -> ProcessingResult:
        self._stats["emergencies"] += 1
        await self._notifier.safe_publish(
            emergency_escalated(context.user_id, context.conversation_id, risk.score, list(risk.factors)))
        stages.append(PipelineStage.STATE_DECISION)
        transition = self._decide_transition(context, risk, None)
        emergency = await self._guard("emergency_response", self._emergency.respond(risk, context, message),
                                      lambda: self._emergency.fallback(risk))
        response = TherapeuticResponse(content=emergency.content, suggested_techniques=EMERGENCY_TECHNIQUES,
                                       is_fallback=emergency.is_fallback)
        stages.append(PipelineStage.PROGRESS_METRICS)
        progress = self._calculate_progress(context, message, response)
        stages.append(PipelineStage.DONE)
        degraded = ("emergency_response",) if emergency.is_fallback else ()
        return ProcessingResult(
            user_message=message, risk_assessment=risk, state_transition=transition, response=response,
            progress=progress, emergency=emergency, degraded_stages=degraded,
            metadata={"stages": [s.value for s in stages], "urgency": emergency.urgency},
        )

    async def _analyze(self, message: Message, context: ConversationContext) -> AnalysisResult:
        return await self._guard("analysis", self._analyzer.analyze(message, context), lambda: FALLBACK_ANALYSIS)

    def _decide_transition(self, context: ConversationContext, risk: RiskAssessment,
                           analysis: AnalysisResult | None) -> StateTransition:
        try:
            return self._state.decide(context.current_state, risk, analysis, context.plan_version)
        except InvalidStateTransitionError as e:
            logger.warning("state_transition_rejected", conversation_id=str(context.conversation_id),
                           from_state=e.current.value, proposed=e.proposed.value)
            return StateTransition(context.current_state, context.current_state, reason="transition_rejected")

    async def _revise_plan(self, context: ConversationContext, message: Message,
                           analysis: AnalysisResult) -> PlanVersion | None:
        if not analysis.should_be_revised:
            return None
        await self._notifier.safe_publish(revising_plan(context.user_id, context.conversation_id,
                                                        context.plan.plan_id))
        working_plan = copy.deepcopy(context.plan)
        return await self._guard("plan_revision", self._plans.revise(working_plan, context, message), lambda: None)

    def _calculate_progress(self, context: ConversationContext, message: Message,
                            response: TherapeuticResponse) -> SessionProgress:
        try:
            return self._progress.calculate_session_metrics((*context.history, message), response)
        except Exception as e:
            logger.warning("stage_fallback", stage="progress_metrics", error=str(e))
            return SessionProgress()

    @staticmethod
    def _degraded(analysis: AnalysisResult, transition: StateTransition, response: TherapeuticResponse,
                  plan_version: PlanVersion | None) -> tuple[str, ...]:
        degraded: list[str] = []
        if analysis.is_fallback:
            degraded.append("analysis")
        if transition.reason == "transition_rejected":
            degraded.append("state_decision")
        if response.is_fallback:
            degraded.append("response_generation")
        if analysis.should_be_revised and plan_version is None:
            degraded.append("plan_revision")
        return tuple(degraded)

    @staticmethod
    async def _guard(stage: str, work: Awaitable[T], fallback: Callable[[], T]) -> T:
        """Await a non-critical stage, substituting its fallback on any error."""
        try:
            return await work
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("stage_fallback", stage=stage, error=str(e), error_type=type(e).__name__)
            return fallback()

    @staticmethod
    async def _discard(task: asyncio.Task[Any] | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
