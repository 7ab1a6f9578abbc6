"""
Workflow errors. Every rejected transition raises a TransitionError subclass carrying
the attempted from/to pair, so callers can render specific feedback per failure.
"""


class TransitionError(Exception):
    """Base class for a rejected state transition. Not retryable without a state/context change."""

    code = "transition_error"

    def __init__(self, from_state: str | None, to_state: str | None, message: str | None = None):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message or f"Cannot transition from {from_state!r} to {to_state!r}")

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": str(self),
            "from": self.from_state,
            "to": self.to_state,
        }


class ReentrantTransitionError(TransitionError):
    """A transition was started while another one is in flight on the same call stack."""

    code = "reentrant_transition"


class NoOpTransitionError(TransitionError):
    code = "noop_transition"

    def __init__(self, state: str):
        super().__init__(state, state, f"Entity is already in state {state!r}")


class StaleStateError(TransitionError):
    """Caller's believed current state does not match the entity's live state."""

    code = "stale_state"

    def __init__(self, expected: str, actual: str, to_state: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            actual,
            to_state,
            f"Stale state: request assumed {expected!r} but entity is in {actual!r}",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["expected"] = self.expected
        data["actual"] = self.actual
        return data


class IllegalTransitionError(TransitionError):
    """No edge in the state definition permits this move."""

    code = "illegal_transition"


class UnknownStateError(IllegalTransitionError):
    code = "unknown_state"

    def __init__(self, from_state: str | None, to_state: str):
        super().__init__(from_state, to_state, f"Target state {to_state!r} is not a valid state")


class GuardRejectedError(TransitionError):
    code = "guard_rejected"

    def __init__(self, from_state: str, to_state: str, guard_name: str):
        self.guard_name = guard_name
        super().__init__(
            from_state,
            to_state,
            f"Transition from {from_state!r} to {to_state!r} blocked by guard {guard_name!r}",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["guard"] = self.guard_name
        return data


class ValidationRejectedError(TransitionError):
    """A multi-reason business rule failed. `reasons` holds every unmet requirement."""

    code = "validation_rejected"

    def __init__(self, from_state: str, to_state: str, reasons: list[str]):
        self.reasons = list(reasons)
        super().__init__(
            from_state,
            to_state,
            f"Cannot transition from {from_state!r} to {to_state!r}: " + "; ".join(self.reasons),
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reasons"] = list(self.reasons)
        return data


class HookRejectedError(TransitionError):
    code = "hook_rejected"

    def __init__(self, from_state: str, to_state: str, hook_name: str):
        self.hook_name = hook_name
        super().__init__(
            from_state,
            to_state,
            f"Transition from {from_state!r} to {to_state!r} vetoed by hook {hook_name!r}",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["hook"] = self.hook_name
        return data


class OverrideReasonRequiredError(TransitionError):
    code = "override_reason_required"

    def __init__(self, from_state: str, to_state: str):
        super().__init__(from_state, to_state, "A forced transition requires an explicit reason")


class StateDefinitionError(ValueError):
    """Raised at startup when a state definition violates its invariants."""


# Orchestration-level errors (raised by the workflow service, not the engine)


class ProductNotFoundError(Exception):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class AuthorizationError(Exception):
    def __init__(self, admin_id: int | None, permission: str):
        self.admin_id = admin_id
        self.permission = permission
        super().__init__(f"Admin {admin_id} lacks permission {permission!r}")


class ConcurrentUpdateError(Exception):
    """Raised when the row changed since it was read (version mismatch). Retry the whole read-transition-write cycle."""

    def __init__(self, product_id: int, expected_version: int):
        self.product_id = product_id
        self.expected_version = expected_version
        super().__init__(f"Product {product_id} was modified concurrently (expected version {expected_version})")


class SchedulingError(ValueError):
    """Raised when a requested publication time is outside the allowed window."""
