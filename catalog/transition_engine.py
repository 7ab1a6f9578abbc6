"""
Guarded transition executor, reusable across entity types.

One engine per StateDefinition, built at startup and shared. Per call:
stale check -> target/no-op check -> edge lookup -> guard -> validator -> before hooks
-> mutate state + stamp timestamp + append history (rolled back together on failure)
-> after hooks (best effort).

The engine never stores entity references; it reads and writes state through the
StatefulEntity accessors only.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping, Protocol

from catalog.errors import (
    GuardRejectedError,
    HookRejectedError,
    IllegalTransitionError,
    NoOpTransitionError,
    OverrideReasonRequiredError,
    ReentrantTransitionError,
    StaleStateError,
    TransitionError,
    UnknownStateError,
    ValidationRejectedError,
)
from catalog.metrics import workflow_transitions_rejected_total, workflow_transitions_total
from catalog.state_definition import Edge, StateDefinition, StateMetadata, callable_name, normalize_state
from catalog.transition_history import TransitionHistory, TransitionRecord

logger = logging.getLogger(__name__)


class StatefulEntity(Protocol):
    """Capability contract an entity exposes to the engine."""

    def get_current_state(self) -> Any: ...

    def set_current_state(self, state: Any) -> None: ...

    def set_timestamp_field(self, field_name: str, value: datetime) -> None: ...

    def get_transition_history(self) -> TransitionHistory: ...


@dataclass(frozen=True)
class TransitionRequest:
    current_state: Any
    target_state: Any
    reason: str | None = None
    actor_id: int | None = None
    context: Mapping[str, Any] = field(default_factory=dict)
    # Visible to guards, validators and hooks but never recorded (e.g. the actor's permissions)
    guard_context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "current_state", normalize_state(self.current_state))
        object.__setattr__(self, "target_state", normalize_state(self.target_state))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionEngine:
    def __init__(self, definition: StateDefinition, clock: Callable[[], datetime] | None = None):
        self.definition = definition
        self._clock = clock or _utcnow
        # Same-thread nesting is detected through the thread-local flag and rejected;
        # transitions from other threads wait on the lock instead of failing. Guards, validators
        # and before hooks run under the lock and must not wait on another thread's transition.
        self._lock = threading.Lock()
        self._local = threading.local()

    @property
    def entity_type(self) -> str:
        return self.definition.name

    @property
    def initial_state(self) -> str:
        return self.definition.initial

    @property
    def in_transition(self) -> bool:
        return getattr(self._local, "in_flight", False)

    # ---------------------------------------------------------------- commands

    def transition(self, entity: StatefulEntity, request: TransitionRequest) -> TransitionRecord:
        """Move entity to request.target_state through the edge table. Raises a TransitionError subclass on rejection."""
        return self._run(entity, request, forced=False)

    def force_transition(self, entity: StatefulEntity, request: TransitionRequest) -> TransitionRecord:
        """
        Admin override: skips edge lookup, guards and validators. Requires a reason.
        Hooks still run, and the recorded context carries force=True.
        """
        return self._run(entity, request, forced=True)

    def _run(self, entity: StatefulEntity, request: TransitionRequest, forced: bool) -> TransitionRecord:
        if self.in_transition:
            err = ReentrantTransitionError(
                request.current_state,
                request.target_state,
                "Nested state transitions are not allowed",
            )
            self._count_rejection(err)
            logger.error("%s: nested transition to %r attempted while another is in flight", self.entity_type, request.target_state)
            raise err

        # The latch stays set through the after hooks; the lock only covers check + commit
        self._local.in_flight = True
        try:
            with self._lock:
                record, view = self._execute(entity, request, forced)
            self._run_after_hooks(entity, record, view)
            return record
        except TransitionError as e:
            if not isinstance(e, ReentrantTransitionError):
                self._count_rejection(e)
                logger.warning("%s transition rejected (%s): %s", self.entity_type, e.code, e)
            raise
        finally:
            self._local.in_flight = False

    def _execute(
        self, entity: StatefulEntity, request: TransitionRequest, forced: bool
    ) -> tuple[TransitionRecord, Mapping[str, Any]]:
        target = request.target_state
        current = normalize_state(entity.get_current_state())
        if request.current_state != current:
            raise StaleStateError(request.current_state, current, target)

        context = dict(request.context)
        if forced:
            if not (request.reason and request.reason.strip()):
                raise OverrideReasonRequiredError(current, target)
            self._check_target(current, target)
            context["force"] = True
        view = MappingProxyType({**request.guard_context, **context})
        if not forced:
            self._select_edge(entity, current, target, view)

        for hook in self.definition.before_hooks_for(target):
            if hook(entity, current, target, view) is False:
                raise HookRejectedError(current, target, callable_name(hook))

        record = self._commit(entity, current, target, request, context, forced)

        workflow_transitions_total.labels(
            entity_type=self.entity_type,
            from_state=current,
            to_state=target,
            forced=str(forced).lower(),
        ).inc()
        if forced:
            logger.info(
                "%s FORCED transition %s -> %s by actor=%s reason=%r",
                self.entity_type, current, target, request.actor_id, request.reason,
            )
        else:
            logger.info("%s transition %s -> %s by actor=%s", self.entity_type, current, target, request.actor_id)
        return record, view

    def _run_after_hooks(self, entity: StatefulEntity, record: TransitionRecord, view: Mapping[str, Any]) -> None:
        current, target = record.from_state, record.to_state
        for hook in self.definition.after_hooks_for(target):
            try:
                hook(entity, current, target, view)
            except ReentrantTransitionError:
                raise
            except Exception:
                # State is already committed; an after hook cannot undo it
                logger.exception(
                    "%s: after-transition hook %s failed for %s -> %s",
                    self.entity_type,
                    callable_name(hook),
                    current,
                    target,
                )

    def _commit(
        self,
        entity: StatefulEntity,
        current: str,
        target: str,
        request: TransitionRequest,
        context: Mapping[str, Any],
        forced: bool,
    ) -> TransitionRecord:
        previous = entity.get_current_state()
        now = self._clock()
        entity.set_current_state(target)
        try:
            field_name = self.definition.timestamp_field(target)
            if field_name:
                entity.set_timestamp_field(field_name, now)
            record = TransitionRecord.create(
                from_state=current,
                to_state=target,
                timestamp=now,
                reason=request.reason,
                actor_id=request.actor_id,
                context=context,
                entity_type=self.entity_type,
                forced=forced,
            )
            entity.get_transition_history().append(record)
        except Exception:
            entity.set_current_state(previous)
            raise
        return record

    # ------------------------------------------------------------- evaluation

    def _check_target(self, current: str, target: str) -> None:
        if not self.definition.has_state(target):
            raise UnknownStateError(current, target)
        if current == target:
            raise NoOpTransitionError(current)

    def _select_edge(self, entity: StatefulEntity, current: str, target: str, context: Mapping[str, Any]) -> Edge:
        self._check_target(current, target)
        edges = self.definition.edges_between(current, target)
        if not edges:
            raise IllegalTransitionError(current, target)

        rejected_by = None
        for edge in edges:
            if edge.guard is not None and not edge.guard(entity, context):
                rejected_by = rejected_by or edge.guard_name
                continue
            if edge.validator is not None:
                result = edge.validator(entity, context)
                if not result.valid:
                    raise ValidationRejectedError(current, target, list(result.reasons))
            return edge
        raise GuardRejectedError(current, target, rejected_by)

    def check_transition(
        self,
        entity: StatefulEntity,
        target_state: Any,
        context: Mapping[str, Any] | None = None,
    ) -> TransitionError | None:
        """Dry run of the no-op/edge/guard/validator checks. Returns the rejection, or None if allowed."""
        current = normalize_state(entity.get_current_state())
        try:
            self._select_edge(entity, current, normalize_state(target_state), MappingProxyType(dict(context or {})))
        except TransitionError as e:
            return e
        return None

    def can_transition_to(
        self,
        entity: StatefulEntity,
        target_state: Any,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        return self.check_transition(entity, target_state, context) is None

    def get_allowed_transitions(self, entity: StatefulEntity, context: Mapping[str, Any] | None = None) -> frozenset:
        """Targets reachable from the current state whose guards pass (validators are not run)."""
        current = normalize_state(entity.get_current_state())
        view = MappingProxyType(dict(context or {}))
        allowed = set()
        for edge in self.definition.edges_from(current):
            if edge.to_state == current or edge.to_state in allowed:
                continue
            if edge.guard is None or edge.guard(entity, view):
                allowed.add(edge.to_state)
        return frozenset(allowed)

    # ---------------------------------------------------------------- queries

    def get_state_metadata(self, state: Any) -> StateMetadata:
        return self.definition.metadata_for(state)

    def get_all_states(self) -> dict[str, StateMetadata]:
        return {s: self.definition.metadata_for(s) for s in self.definition.states}

    def get_history(self, entity: StatefulEntity, limit: int | None = None) -> list[TransitionRecord]:
        return entity.get_transition_history().all(limit)

    def get_last_transition(self, entity: StatefulEntity) -> TransitionRecord | None:
        return entity.get_transition_history().last()

    def _count_rejection(self, err: TransitionError) -> None:
        workflow_transitions_rejected_total.labels(entity_type=self.entity_type, error=err.code).inc()
