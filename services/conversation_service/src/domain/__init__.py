"""
Haven Conversation Service - Domain Layer.
Risk assessment, state machine, plan versioning and the message pipeline.
"""
from .entities import (
    Conversation,
    Message,
    PlanVersion,
    RiskAssessment,
    StateTransition,
    TherapeuticPlan,
)
from .models import (
    AnalysisResult,
    ConversationContext,
    EmergencyResponse,
    ProcessingResult,
    SessionProgress,
    TherapeuticResponse,
)
from .value_objects import (
    FormatError,
    PlanContent,
    PlanGoal,
    PlanMetrics,
    parse_plan_content,
)
from .risk_assessor import RiskAssessmentEngine, RiskAssessmentError, RiskTrendModel
from .state_machine import (
    ALLOWED_TRANSITIONS,
    ConversationStateMachine,
    InvalidStateTransitionError,
    StateTransitionService,
)
from .plan_versioning import MissingPlanVersionError, PlanConsistencyError, PlanVersionControl
from .analysis import ContextAnalyzer
from .response_generator import TherapistResponseGenerator, fallback_response
from .emergency import CrisisResourceDirectory, EmergencyResponder
from .progress import ProgressTracker, ProgressTrackerSettings
from .orchestrator import MessageProcessingOrchestrator, PipelineStage

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AnalysisResult",
    "ContextAnalyzer",
    "Conversation",
    "ConversationContext",
    "ConversationStateMachine",
    "CrisisResourceDirectory",
    "EmergencyResponder",
    "EmergencyResponse",
    "FormatError",
    "InvalidStateTransitionError",
    "Message",
    "MessageProcessingOrchestrator",
    "MissingPlanVersionError",
    "PipelineStage",
    "PlanConsistencyError",
    "PlanContent",
    "PlanGoal",
    "PlanMetrics",
    "PlanVersion",
    "PlanVersionControl",
    "ProcessingResult",
    "ProgressTracker",
    "ProgressTrackerSettings",
    "RiskAssessment",
    "RiskAssessmentEngine",
    "RiskAssessmentError",
    "RiskTrendModel",
    "SessionProgress",
    "StateTransition",
    "StateTransitionService",
    "TherapeuticPlan",
    "TherapeuticResponse",
    "fallback_response",
    "parse_plan_content",
]
