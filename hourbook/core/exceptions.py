"""
Engine-wide exception hierarchy.

Services raise these types and never touch HTTP. Blueprints register one
handler (``register_error_handlers`` in ``hourbook.utils.errors``) that turns
any of them into ``{"error": code, "message": ..., **context}``.

Usage:
    from hourbook.core.exceptions import BudgetExceededError, NotFoundError

    raise NotFoundError(resource="PhaseAllocation", resource_id=alloc_id)
    raise BudgetExceededError(excess_hours=2.0)
"""


class EngineError(Exception):
    """Base class. ``code`` is the stable machine-readable identifier."""

    code = "EngineError"
    http_status = 500

    def __init__(self, message: str, context: dict | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.context}


class ValidationError(EngineError):
    """Well-formed input that violates a business rule (negative hours, short reason).

    Distinct from HTTP 400 (malformed input, caught in the blueprint).

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown, keys are field names.
    """

    code = "ValidationError"
    http_status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message, {"details": self.details} if self.details else None)


class NotFoundError(EngineError):
    code = "NotFound"
    http_status = 404

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class BudgetExceededError(EngineError):
    """Committed weekly hours would exceed the allocation's totalHours."""

    code = "BudgetExceeded"
    http_status = 409

    def __init__(self, excess_hours: float, message: str | None = None) -> None:
        self.excess_hours = excess_hours
        super().__init__(
            message or f"Planned hours exceed the allocation budget by {excess_hours:g}h",
            {"excessHours": excess_hours},
        )


class ExceedsRemainingBudgetError(EngineError):
    """An approver's modified weekly hours do not fit in what is left of the budget."""

    code = "ExceedsRemainingBudget"
    http_status = 409

    def __init__(self, remaining_hours: float, requested_hours: float) -> None:
        self.remaining_hours = remaining_hours
        self.requested_hours = requested_hours
        super().__init__(
            f"Requested {requested_hours:g}h but only {remaining_hours:g}h remain",
            {"remainingHours": remaining_hours, "requestedHours": requested_hours},
        )


class ApprovalConflictError(EngineError):
    """The (status, event) pair is not a legal transition."""

    code = "ApprovalConflict"
    http_status = 409

    def __init__(self, message: str, current_status: str | None = None, event: str | None = None) -> None:
        self.current_status = current_status
        self.event = event
        context = {}
        if current_status is not None:
            context["currentStatus"] = current_status
        if event is not None:
            context["event"] = event
        super().__init__(message, context)


class CompositionError(EngineError):
    """Internal consistency failure: composition entries do not add up to totalHours.

    Raised after an append to the composition log; the caller rolls the
    transaction back.
    """

    code = "CompositionMismatch"
    http_status = 500

    def __init__(self, expected: float, actual: float) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Composition entries sum to {actual:g}h, totalHours is {expected:g}h",
            {"expectedHours": expected, "actualHours": actual},
        )
