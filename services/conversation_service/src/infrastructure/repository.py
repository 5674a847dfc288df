"""
Haven Conversation Service - Repository Infrastructure.
In-memory conversation and plan stores plus a unit of work that applies a
pipeline result to both as one all-or-nothing change.
"""
from __future__ import annotations
import copy
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable
from uuid import UUID, uuid4
import structlog

from haven_common.exceptions import EntityNotFoundError, ErrorContext, ErrorSeverity, PersistenceError
from ..domain.entities import Conversation, Message, PlanVersion, RiskAssessment, StateTransition, TherapeuticPlan
from ..domain.value_objects import PlanContent
from ..schemas import ConversationState

logger = structlog.get_logger(__name__)


class TransactionalRepository(ABC):
    """Repository whose aggregates can be checkpointed and restored one id at a time."""

    @abstractmethod
    async def checkpoint(self, ids: Iterable[UUID]) -> dict[UUID, Any]:
        """Copy the named aggregates; ids not yet stored map to None."""

    @abstractmethod
    async def restore(self, snapshot: dict[UUID, Any]) -> None:
        """Put back exactly the aggregates a checkpoint covered."""


class ConversationRepository(TransactionalRepository):
    """Conversation persistence contract."""

    @abstractmethod
    async def get(self, conversation_id: UUID) -> Conversation | None: ...

    @abstractmethod
    async def get_latest_by_user(self, user_id: UUID) -> Conversation | None: ...

    @abstractmethod
    async def create_conversation(self, user_id: UUID, initial_state: ConversationState,
                                  plan_id: UUID | None = None) -> Conversation: ...

    @abstractmethod
    async def append_message(self, conversation_id: UUID, message: Message) -> None: ...

    @abstractmethod
    async def append_risk_assessment(self, conversation_id: UUID, assessment: RiskAssessment) -> None: ...

    @abstractmethod
    async def update_state(self, conversation_id: UUID, transition: StateTransition) -> None: ...

    @abstractmethod
    async def set_current_plan(self, conversation_id: UUID, plan_id: UUID) -> None: ...


class PlanRepository(TransactionalRepository):
    """Therapeutic plan persistence contract."""

    @abstractmethod
    async def create_plan(self, user_id: UUID, initial_content: PlanContent) -> TherapeuticPlan: ...

    @abstractmethod
    async def append_version(self, plan_id: UUID, previous_version_id: UUID, content: PlanContent,
                             validation_score: float, *, version_id: UUID | None = None) -> PlanVersion: ...

    @abstractmethod
    async def find_by_id(self, plan_id: UUID) -> TherapeuticPlan | None: ...

    @abstractmethod
    async def set_current_version(self, plan_id: UUID, version_id: UUID) -> PlanVersion: ...


class InMemoryConversationRepository(ConversationRepository):
    """Dictionary-backed conversation store with a per-user index."""

    def __init__(self) -> None:
        self._storage: dict[UUID, Conversation] = {}
        self._user_index: dict[UUID, list[UUID]] = {}

    async def get(self, conversation_id: UUID) -> Conversation | None:
        return self._storage.get(conversation_id)

    async def get_latest_by_user(self, user_id: UUID) -> Conversation | None:
        ids = self._user_index.get(user_id, [])
        return self._storage.get(ids[-1]) if ids else None

    async def list_by_user(self, user_id: UUID) -> list[Conversation]:
        return [self._storage[cid] for cid in self._user_index.get(user_id, []) if cid in self._storage]

    async def create_conversation(self, user_id: UUID, initial_state: ConversationState,
                                  plan_id: UUID | None = None) -> Conversation:
        conversation = Conversation(user_id=user_id, state=initial_state, plan_id=plan_id)
        self._storage[conversation.conversation_id] = conversation
        self._user_index.setdefault(user_id, []).append(conversation.conversation_id)
        logger.info("conversation_created", conversation_id=str(conversation.conversation_id), user_id=str(user_id))
        return conversation

    async def append_message(self, conversation_id: UUID, message: Message) -> None:
        self._require(conversation_id).add_message(message)

    async def append_risk_assessment(self, conversation_id: UUID, assessment: RiskAssessment) -> None:
        self._require(conversation_id).add_risk_assessment(assessment)

    async def update_state(self, conversation_id: UUID, transition: StateTransition) -> None:
        self._require(conversation_id).apply_transition(transition)

    async def set_current_plan(self, conversation_id: UUID, plan_id: UUID) -> None:
        self._require(conversation_id).plan_id = plan_id

    async def checkpoint(self, ids: Iterable[UUID]) -> dict[UUID, Conversation | None]:
        return {cid: copy.deepcopy(self._storage.get(cid)) for cid in ids}

    async def restore(self, snapshot: dict[UUID, Conversation | None]) -> None:
        for cid, saved in snapshot.items():
            if saved is not None:
                self._storage[cid] = saved
                continue
            created = self._storage.pop(cid, None)
            if created is not None and cid in self._user_index.get(created.user_id, []):
                self._user_index[created.user_id].remove(cid)

    def _require(self, conversation_id: UUID) -> Conversation:
        conversation = self._storage.get(conversation_id)
        if conversation is None:
            raise EntityNotFoundError("Conversation", str(conversation_id))
        return conversation


class InMemoryPlanRepository(PlanRepository):
    """Dictionary-backed plan store."""

    def __init__(self) -> None:
        self._storage: dict[UUID, TherapeuticPlan] = {}

    async def create_plan(self, user_id: UUID, initial_content: PlanContent) -> TherapeuticPlan:
        plan = TherapeuticPlan.create(user_id, initial_content)
        self._storage[plan.plan_id] = plan
        logger.info("plan_created", plan_id=str(plan.plan_id), user_id=str(user_id))
        return plan

    async def append_version(self, plan_id: UUID, previous_version_id: UUID, content: PlanContent,
                             validation_score: float, *, version_id: UUID | None = None) -> PlanVersion:
        plan = self._require(plan_id)
        head = plan.latest_version
        if head is None or head.version_id != previous_version_id:
            raise PersistenceError(
                f"Plan {plan_id} head moved; expected previous version {previous_version_id}",
                operation="append_version", details={"plan_id": str(plan_id)},
            )
        version = PlanVersion(plan_id=plan_id, version=head.version + 1, content=content,
                              previous_version_id=previous_version_id, validation_score=validation_score,
                              version_id=version_id or uuid4())
        plan.append_version(version)
        return version

    async def find_by_id(self, plan_id: UUID) -> TherapeuticPlan | None:
        return self._storage.get(plan_id)

    async def set_current_version(self, plan_id: UUID, version_id: UUID) -> PlanVersion:
        return self._require(plan_id).rollback_to_version(version_id)

    async def checkpoint(self, ids: Iterable[UUID]) -> dict[UUID, TherapeuticPlan | None]:
        return {pid: copy.deepcopy(self._storage.get(pid)) for pid in ids}

    async def restore(self, snapshot: dict[UUID, TherapeuticPlan | None]) -> None:
        for pid, saved in snapshot.items():
            if saved is None:
                self._storage.pop(pid, None)
            else:
                self._storage[pid] = saved

    def _require(self, plan_id: UUID) -> TherapeuticPlan:
        plan = self._storage.get(plan_id)
        if plan is None:
            raise EntityNotFoundError("TherapeuticPlan", str(plan_id))
        return plan


Operation = Callable[[], Awaitable[Any]]


class UnitOfWork:
    """
    Stages repository writes and applies them together on commit.

    Each staged write names the conversation or plan it touches. If any
    write fails, only those aggregates are restored to their pre-commit
    state, so other conversations' writes are left alone, and a
    PersistenceError is raised.
    """

    def __init__(self, conversations: ConversationRepository, plans: PlanRepository, *,
                 context: ErrorContext | None = None, failure_severity: ErrorSeverity = ErrorSeverity.HIGH) -> None:
        self.conversations, self.plans = conversations, plans
        self._context = context or ErrorContext(operation="unit_of_work")
        self._failure_severity = failure_severity
        self._operations: list[tuple[str, Operation]] = []
        self._conversation_ids: set[UUID] = set()
        self._plan_ids: set[UUID] = set()
        self._committed = False

    @property
    def pending(self) -> list[str]:
        return [name for name, _ in self._operations]

    def stage(self, name: str, operation: Operation, *, conversation_id: UUID | None = None,
              plan_id: UUID | None = None) -> None:
        """Queue a write; nothing touches the repositories until commit."""
        if self._committed:
            raise PersistenceError("Unit of work already committed", operation=name, context=self._context)
        if conversation_id is not None:
            self._conversation_ids.add(conversation_id)
        if plan_id is not None:
            self._plan_ids.add(plan_id)
        self._operations.append((name, operation))

    async def commit(self) -> None:
        """Apply all staged writes, or none of them."""
        touched: list[tuple[TransactionalRepository, set[UUID]]] = [
            (self.conversations, self._conversation_ids), (self.plans, self._plan_ids),
        ]
        snapshots = [(repo, await repo.checkpoint(ids)) for repo, ids in touched]
        current = ""
        try:
            for current, operation in self._operations:
                await operation()
        except Exception as e:
            for repo, snapshot in snapshots:
                await repo.restore(snapshot)
            self._operations.clear()
            raise PersistenceError(f"Commit failed at {current}: {e}", operation=current,
                                   severity=self._failure_severity, context=self._context, cause=e) from e
        logger.debug("unit_of_work_committed", operations=[name for name, _ in self._operations])
        self._operations.clear()
        self._committed = True

    async def rollback(self) -> None:
        """Discard staged writes."""
        self._operations.clear()

    async def __aenter__(self) -> UnitOfWork:
        """Enter context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context manager."""
        if exc_type is not None:
            await self.rollback()
        elif not self._committed:
            await self.commit()
