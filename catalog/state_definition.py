"""
Declarative lifecycle description for one entity type: states, initial state, guarded edges,
timestamp bindings, hooks and presentation metadata. Built once at startup and never mutated.
"""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Sequence

from catalog.errors import StateDefinitionError

# (entity, context) -> bool
Guard = Callable[[Any, Mapping[str, Any]], bool]
# (entity, context) -> ValidationResult
Validator = Callable[[Any, Mapping[str, Any]], "ValidationResult"]
# (entity, from_state, to_state, context) -> False to veto (before hooks only); None/True otherwise.
# Before hooks hold the engine lock: they must not block on a transition running in another thread.
Hook = Callable[[Any, str, str, Mapping[str, Any]], bool | None]


def normalize_state(state: Any) -> Any:
    """Enum members compare by value; everything else is used as-is."""
    if isinstance(state, Enum):
        return state.value
    return state


def callable_name(fn: Callable) -> str:
    return getattr(fn, "__name__", None) or type(fn).__name__


@dataclass(frozen=True)
class ValidationResult:
    reasons: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.reasons

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls()

    @classmethod
    def failed(cls, reasons: Iterable[str]) -> "ValidationResult":
        return cls(tuple(reasons))


@dataclass(frozen=True)
class StateMetadata:
    """Presentation hints only."""

    value: str
    label: str
    color: str = "gray"
    icon: str = "fas fa-circle"
    description: str | None = None
    css_class: str = "bg-gray-100 text-gray-800"

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "label": self.label,
            "color": self.color,
            "icon": self.icon,
            "description": self.description,
            "css_class": self.css_class,
        }


@dataclass(frozen=True)
class Edge:
    from_states: frozenset
    to_state: str
    guard: Guard | None = None
    validator: Validator | None = None
    guard_label: str | None = field(default=None, compare=False)

    @classmethod
    def between(
        cls,
        from_states: Any,
        to_state: Any,
        guard: Guard | None = None,
        validator: Validator | None = None,
        guard_label: str | None = None,
    ) -> "Edge":
        if isinstance(from_states, (str, Enum)):
            from_states = [from_states]
        return cls(
            from_states=frozenset(normalize_state(s) for s in from_states),
            to_state=normalize_state(to_state),
            guard=guard,
            validator=validator,
            guard_label=guard_label,
        )

    @property
    def guard_name(self) -> str | None:
        if self.guard is None:
            return None
        return self.guard_label or callable_name(self.guard)

    def leaves(self, state: str) -> bool:
        return state in self.from_states


class StateDefinition:
    def __init__(
        self,
        name: str,
        states: Iterable[Any],
        initial: Any,
        edges: Sequence[Edge],
        timestamp_bindings: Mapping[Any, str] | None = None,
        metadata: Mapping[Any, StateMetadata] | None = None,
        before_hooks: Sequence[Hook] = (),
        after_hooks: Sequence[Hook] = (),
        state_before_hooks: Mapping[Any, Sequence[Hook]] | None = None,
        state_after_hooks: Mapping[Any, Sequence[Hook]] | None = None,
    ):
        self.name = name
        ordered: list = []
        for s in states:
            s = normalize_state(s)
            if s not in ordered:
                ordered.append(s)
        self.states: tuple = tuple(ordered)
        self.initial = normalize_state(initial)
        self.edges: tuple[Edge, ...] = tuple(edges)
        self.timestamp_bindings = MappingProxyType(
            {normalize_state(k): v for k, v in (timestamp_bindings or {}).items()}
        )
        self._metadata = MappingProxyType(
            {normalize_state(k): v for k, v in (metadata or {}).items()}
        )
        self.before_hooks: tuple[Hook, ...] = tuple(before_hooks)
        self.after_hooks: tuple[Hook, ...] = tuple(after_hooks)
        self._state_before_hooks = MappingProxyType(
            {normalize_state(k): tuple(v) for k, v in (state_before_hooks or {}).items()}
        )
        self._state_after_hooks = MappingProxyType(
            {normalize_state(k): tuple(v) for k, v in (state_after_hooks or {}).items()}
        )
        self._validate()

    def _validate(self) -> None:
        known = set(self.states)
        if not known:
            raise StateDefinitionError(f"{self.name}: states must not be empty")
        if self.initial not in known:
            raise StateDefinitionError(f"{self.name}: initial state {self.initial!r} is not a declared state")
        for edge in self.edges:
            if not edge.from_states:
                raise StateDefinitionError(f"{self.name}: edge to {edge.to_state!r} has no source states")
            unknown = (edge.from_states | {edge.to_state}) - known
            if unknown:
                raise StateDefinitionError(
                    f"{self.name}: edge to {edge.to_state!r} references unknown state(s) {sorted(unknown)}"
                )
        for mapping, what in (
            (self.timestamp_bindings, "timestamp binding"),
            (self._metadata, "metadata"),
            (self._state_before_hooks, "before hook"),
            (self._state_after_hooks, "after hook"),
        ):
            unknown = set(mapping) - known
            if unknown:
                raise StateDefinitionError(f"{self.name}: {what} for unknown state(s) {sorted(unknown)}")

    def has_state(self, state: Any) -> bool:
        return normalize_state(state) in self.states

    def edges_between(self, from_state: str, to_state: str) -> list[Edge]:
        """Edges permitting from_state -> to_state, in declaration order."""
        return [e for e in self.edges if e.to_state == to_state and e.leaves(from_state)]

    def edges_from(self, from_state: str) -> list[Edge]:
        return [e for e in self.edges if e.leaves(from_state)]

    def timestamp_field(self, state: str) -> str | None:
        return self.timestamp_bindings.get(state)

    def metadata_for(self, state: Any) -> StateMetadata:
        state = normalize_state(state)
        meta = self._metadata.get(state)
        if meta is not None:
            return meta
        return StateMetadata(value=state, label=str(state).replace("_", " ").capitalize())

    def before_hooks_for(self, to_state: str) -> tuple[Hook, ...]:
        return self.before_hooks + self._state_before_hooks.get(to_state, ())

    def after_hooks_for(self, to_state: str) -> tuple[Hook, ...]:
        return self.after_hooks + self._state_after_hooks.get(to_state, ())

    def __repr__(self) -> str:
        return f"StateDefinition(name={self.name!r}, states={list(self.states)!r}, edges={len(self.edges)})"
