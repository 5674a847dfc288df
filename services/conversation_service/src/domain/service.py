"""
Haven Conversation Service - Conversation Service Facade.
Entry point for channel handlers: loads the conversation snapshot, runs the
message pipeline and commits its result atomically.
"""
from __future__ import annotations
import asyncio
import copy
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID
import structlog

from haven_common.exceptions import (
    ApplicationError, ConfigurationError, EntityNotFoundError, ErrorContext, ErrorSeverity, HavenError,
    LLMServiceError, ValidationError,
)
from services.shared import ServiceBase
from services.shared.infrastructure import HttpxInferenceGateway, InferenceGateway, LLMError
from ..config import ConversationServiceSettings, configure_logging, get_settings
from ..events import operator_alert
from ..infrastructure.notifier import LoggingNotifier, Notifier
from ..infrastructure.repository import (
    ConversationRepository, InMemoryConversationRepository, InMemoryPlanRepository, PlanRepository, UnitOfWork,
)
from ..schemas import ConversationState, RiskLevel, SessionResponse, UserInfo
from .analysis import ContextAnalyzer
from .emergency import EmergencyResponder
from .entities import Conversation, Message, PlanVersion, TherapeuticPlan
from .models import ConversationContext, ProcessingResult
from .orchestrator import MessageProcessingOrchestrator
from .plan_versioning import PlanVersionControl
from .progress import ProgressTracker
from .response_generator import TherapistResponseGenerator, fallback_response
from .risk_assessor import RiskAssessmentEngine
from .state_machine import StateTransitionService

logger = structlog.get_logger(__name__)


class ErrorHandler:
    """Turns any pipeline failure into a supportive fallback reply."""

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier

    async def handle_processing_error(
        self,
        error: Exception,
        user_id: UUID,
        state: ConversationState,
        conversation_id: UUID | None = None,
        risk_level: RiskLevel = RiskLevel.LOW,
    ) -> SessionResponse:
        """
        Build the fallback SessionResponse for a failed message.

        CRITICAL errors additionally raise an operator alert. The user never
        sees the technical error.
        """
        context = ErrorContext().with_operation("handle_message").with_user(
            str(user_id), str(conversation_id) if conversation_id else None)
        if isinstance(error, HavenError):
            haven_error = error
        elif isinstance(error, LLMError):
            haven_error = LLMServiceError(error.provider, str(error), status_code=error.status_code,
                                          context=context, cause=error)
        else:
            haven_error = ApplicationError(f"Unexpected error while handling message: {error}",
                                           context=context, cause=error)
        if haven_error.is_critical:
            await self._notifier.safe_publish(operator_alert(
                user_id, conversation_id, haven_error.error_code,
                haven_error.context.correlation_id, haven_error.message,
            ))
        fallback = fallback_response(state)
        logger.warning("processing_fallback_returned", user_id=str(user_id), state=state.value,
                       error=haven_error.to_internal_dict())
        return SessionResponse(
            message=fallback.content, state=state, risk_level=risk_level,
            suggested_techniques=list(fallback.suggested_techniques),
            conversation_id=conversation_id, is_fallback=True,
        )


class ConversationService(ServiceBase):
    """
    Conversation lifecycle and message handling.

    Messages for the same user are serialized through a per-user lock so the
    conversation state and the plan pointer only ever advance one run at a
    time; different users proceed in parallel.
    """

    service_name = "conversation-service"

    def __init__(
        self,
        *,
        orchestrator: MessageProcessingOrchestrator,
        plan_control: PlanVersionControl,
        conversations: ConversationRepository | None = None,
        plans: PlanRepository | None = None,
        progress_tracker: ProgressTracker | None = None,
        notifier: Notifier | None = None,
        settings: ConversationServiceSettings | None = None,
        gateway: InferenceGateway | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._orchestrator = orchestrator
        self._plan_control = plan_control
        self._conversations = conversations or InMemoryConversationRepository()
        self._plans = plans or InMemoryPlanRepository()
        self._progress = progress_tracker or ProgressTracker()
        self._notifier = notifier or LoggingNotifier()
        self._gateway = gateway
        self._error_handler = ErrorHandler(self._notifier)
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._lock_users: dict[UUID, int] = {}
        self._initialized = False
        self._stats = {
            "messages_handled": 0,
            "fallback_responses": 0,
            "conversations_started": 0,
            "conversation_resets": 0,
            "plan_rollbacks": 0,
        }

    @property
    def stats(self) -> dict[str, int]:
        return {**self._stats, **self._orchestrator.stats}

    async def initialize(self) -> None:
        """Initialize the conversation service."""
        configure_logging(self._settings.observability)
        logger.info("conversation_service_initializing")
        if self._settings.is_production and not self._settings.llm.api_key.get_secret_value():
            raise ConfigurationError("Inference gateway API key is not configured", config_key="HAVEN_LLM_API_KEY")
        self._initialized = True
        logger.info("conversation_service_initialized", settings=self._settings.to_dict())

    async def shutdown(self) -> None:
        """Shutdown the conversation service."""
        logger.info("conversation_service_shutting_down", stats=self.stats)
        if isinstance(self._gateway, HttpxInferenceGateway):
            await self._gateway.close()
        self._initialized = False

    async def handle(self, user_id: UUID, raw_text: str) -> SessionResponse:
        """Process one user message and return the reply package."""
        async with self._user_lock(user_id):
            self._stats["messages_handled"] += 1
            state, conversation_id, risk_level = ConversationState.INFO_GATHERING, None, RiskLevel.LOW
            try:
                if not raw_text or not raw_text.strip():
                    existing = await self._conversations.get_latest_by_user(user_id)
                    if existing is not None and not existing.is_closed:
                        state, conversation_id = existing.state, existing.conversation_id
                    raise ValidationError("Message text is empty", field="raw_text", constraint="non_empty")
                conversation = await self._get_or_create(user_id)
                state, conversation_id = conversation.state, conversation.conversation_id
                if conversation.latest_risk is not None:
                    risk_level = conversation.latest_risk.level
                context = await self._snapshot(conversation)
                message = Message.from_user(conversation.conversation_id, raw_text.strip())
                result = await self._orchestrator.process(context, message)
                await self._persist(conversation, result)
                return await self._compose(conversation, result)
            except Exception as e:
                self._stats["fallback_responses"] += 1
                return await self._error_handler.handle_processing_error(
                    e, user_id, state, conversation_id=conversation_id, risk_level=risk_level)

    async def get_or_create_conversation(self, user_id: UUID) -> Conversation:
        """Return the user's open conversation, starting one if needed."""
        async with self._user_lock(user_id):
            return await self._get_or_create(user_id)

    async def load_context(self, user_id: UUID) -> ConversationContext:
        """Immutable snapshot of the user's conversation for one pipeline run."""
        async with self._user_lock(user_id):
            return await self._snapshot(await self._get_or_create(user_id))

    async def get_user_info(self, user_id: UUID) -> UserInfo | None:
        conversation = await self._conversations.get_latest_by_user(user_id)
        if conversation is None:
            return None
        stats = self._progress.session_stats(conversation)
        version = await self._current_version(conversation)
        return UserInfo(
            conversation_id=conversation.conversation_id,
            state=conversation.state,
            message_count=stats["total_messages"],
            session_duration_seconds=max(0.0, stats["duration_seconds"]),
            plan_focus_area=version.content.focus if version else None,
            plan_version=version.version if version else None,
            recent_insights=self._progress.progress_insights(conversation),
        )

    async def reset_conversation(self, user_id: UUID) -> Conversation:
        """Start a fresh conversation and plan; earlier ones stay in history."""
        async with self._user_lock(user_id):
            self._stats["conversation_resets"] += 1
            conversation = await self._start_conversation(user_id)
            logger.info("conversation_reset", user_id=str(user_id),
                        conversation_id=str(conversation.conversation_id))
            return conversation

    async def rollback_plan(self, user_id: UUID, version_id: UUID) -> PlanVersion:
        """Re-point the current plan version of the user's conversation."""
        async with self._user_lock(user_id):
            conversation = await self._conversations.get_latest_by_user(user_id)
            if conversation is None or conversation.plan_id is None:
                raise EntityNotFoundError("Conversation", str(user_id))
            version = await self._plans.set_current_version(conversation.plan_id, version_id)
            self._stats["plan_rollbacks"] += 1
            return version

    @asynccontextmanager
    async def _user_lock(self, user_id: UUID) -> AsyncIterator[None]:
        """Hold the user's lock; the entry is dropped once no holder or waiter remains."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    async def _get_or_create(self, user_id: UUID) -> Conversation:
        conversation = await self._conversations.get_latest_by_user(user_id)
        if conversation is None or conversation.is_closed:
            return await self._start_conversation(user_id)
        if conversation.plan_id is None or await self._plans.find_by_id(conversation.plan_id) is None:
            logger.warning("conversation_plan_missing", conversation_id=str(conversation.conversation_id))
            plan = await self._plans.create_plan(user_id, self._plan_control.initial_content())
            await self._conversations.set_current_plan(conversation.conversation_id, plan.plan_id)
        return conversation

    async def _start_conversation(self, user_id: UUID) -> Conversation:
        plan = await self._plans.create_plan(user_id, self._plan_control.initial_content())
        conversation = await self._conversations.create_conversation(
            user_id, ConversationState.INFO_GATHERING, plan.plan_id)
        self._stats["conversations_started"] += 1
        return conversation

    async def _require_plan(self, conversation: Conversation) -> TherapeuticPlan:
        plan = await self._plans.find_by_id(conversation.plan_id) if conversation.plan_id else None
        if plan is None:
            raise EntityNotFoundError("TherapeuticPlan", str(conversation.plan_id))
        return plan

    async def _current_version(self, conversation: Conversation) -> PlanVersion | None:
        plan = await self._plans.find_by_id(conversation.plan_id) if conversation.plan_id else None
        return plan.current_version if plan else None

    async def _snapshot(self, conversation: Conversation) -> ConversationContext:
        plan = await self._require_plan(conversation)
        ctx = self._settings.context
        return ConversationContext(
            user_id=conversation.user_id,
            conversation_id=conversation.conversation_id,
            current_state=conversation.state,
            plan=copy.deepcopy(plan),
            history=tuple(conversation.recent_messages(ctx.message_window)),
            risk_history=tuple(conversation.recent_risks(ctx.risk_window)),
        )

    async def _persist(self, conversation: Conversation, result: ProcessingResult) -> None:
        """Commit messages, risk record, state change and plan version as one unit."""
        conversation_id = conversation.conversation_id
        assistant_message = Message.from_assistant(
            conversation_id, result.response.content,
            insights=list(result.response.insights),
            suggested_techniques=list(result.response.suggested_techniques),
            risk_level=result.risk_level.value,
            is_fallback=result.response.is_fallback,
        )
        # a lost crisis record is an operator matter
        severity = ErrorSeverity.CRITICAL if result.risk_level == RiskLevel.CRITICAL else ErrorSeverity.HIGH
        context = ErrorContext(operation="persist_processing_result", user_id=str(conversation.user_id),
                               conversation_id=str(conversation_id))
        repos = self._conversations
        async with UnitOfWork(self._conversations, self._plans, context=context, failure_severity=severity) as uow:
            uow.stage("append_user_message", lambda: repos.append_message(conversation_id, result.user_message),
                      conversation_id=conversation_id)
            uow.stage("append_risk_assessment",
                      lambda: repos.append_risk_assessment(conversation_id, result.risk_assessment),
                      conversation_id=conversation_id)
            uow.stage("append_assistant_message", lambda: repos.append_message(conversation_id, assistant_message),
                      conversation_id=conversation_id)
            uow.stage("update_state", lambda: repos.update_state(conversation_id, result.state_transition),
                      conversation_id=conversation_id)
            version = result.plan_version
            if version is not None and version.previous_version_id is not None:
                previous_id = version.previous_version_id
                uow.stage("append_plan_version", lambda: self._plans.append_version(
                    version.plan_id, previous_id, version.content, version.validation_score,
                    version_id=version.version_id), plan_id=version.plan_id)

    async def _compose(self, conversation: Conversation, result: ProcessingResult) -> SessionResponse:
        stored = await self._conversations.get(conversation.conversation_id) or conversation
        version = await self._current_version(stored)
        logger.info("message_handled", conversation_id=str(stored.conversation_id),
                    state=result.state_transition.to_state.value, risk_level=result.risk_level.value,
                    emergency=result.is_emergency, degraded=list(result.degraded_stages))
        return SessionResponse(
            message=result.response.content,
            state=result.state_transition.to_state,
            risk_level=result.risk_level,
            suggested_techniques=list(result.response.suggested_techniques),
            progress_score=result.progress.score,
            progress_insights=list(result.progress.insights),
            conversation_id=stored.conversation_id,
            plan_version=version.version if version else None,
            is_fallback=result.response.is_fallback,
        )


def create_conversation_service(
    settings: ConversationServiceSettings | None = None,
    gateway: InferenceGateway | None = None,
    notifier: Notifier | None = None,
    conversations: ConversationRepository | None = None,
    plans: PlanRepository | None = None,
) -> ConversationService:
    """Wire a ConversationService and its pipeline from settings."""
    settings = settings or get_settings()
    gateway = gateway or HttpxInferenceGateway(settings.llm)
    notifier = notifier or LoggingNotifier()
    retries = settings.format_retries
    plan_control = PlanVersionControl(gateway, settings.plan, format_retries=retries)
    progress_tracker = ProgressTracker()
    orchestrator = MessageProcessingOrchestrator(
        risk_engine=RiskAssessmentEngine(gateway, settings.risk, format_retries=retries),
        analyzer=ContextAnalyzer(gateway, format_retries=retries),
        state_service=StateTransitionService(),
        response_generator=TherapistResponseGenerator(gateway, format_retries=retries,
                                                      temperature=settings.context.response_temperature),
        plan_control=plan_control,
        emergency_responder=EmergencyResponder(gateway, hotline=settings.crisis_hotline_number,
                                               format_retries=retries),
        progress_tracker=progress_tracker,
        notifier=notifier,
        speculative_analysis=settings.context.speculative_analysis,
    )
    return ConversationService(
        orchestrator=orchestrator, plan_control=plan_control, conversations=conversations, plans=plans,
        progress_tracker=progress_tracker, notifier=notifier, settings=settings, gateway=gateway,
    )
