"""Domain errors raised by the installment negotiation engine."""
from decimal import Decimal
from typing import Any, Optional


class InstallmentError(Exception):
    """Base class for every error the engine reports to its caller."""

    code = "installment_error"
    status_code = 400

    def __init__(self, detail: str, **context: Any):
        self.detail = detail
        self.context = context
        super().__init__(detail)

    def to_dict(self) -> dict:
        """Serializable form used by the API layer and log records."""
        payload = {"code": self.code, "detail": self.detail}
        for key, value in self.context.items():
            payload[key] = str(value) if isinstance(value, Decimal) else value
        return payload


class NotFoundError(InstallmentError):
    """Raised when a request or offer id does not exist."""

    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)


class ForbiddenError(InstallmentError):
    """Raised when the acting party does not own the resource it mutates."""

    code = "forbidden"
    status_code = 403

    def __init__(self, actor_id: str, request_id: str):
        super().__init__(
            f"Actor {actor_id} does not own installment request {request_id}",
            actor_id=actor_id,
            request_id=request_id,
        )


class PolicyViolationError(InstallmentError):
    """A new request falls outside the configured installment policy."""

    code = "policy_violation"
    status_code = 422


class FeatureDisabledError(PolicyViolationError):
    code = "feature_disabled"

    def __init__(self):
        super().__init__("Installment financing is currently disabled")


class ValueOutOfRangeError(PolicyViolationError):
    code = "value_out_of_range"

    def __init__(self, value: Decimal, bound: str, limit: Decimal):
        super().__init__(
            f"Requested value {value} violates {bound} bound {limit}",
            value=value,
            bound=bound,
            limit=limit,
        )


class DurationOutOfRangeError(PolicyViolationError):
    code = "duration_out_of_range"

    def __init__(self, months: int, bound: str, limit: int):
        super().__init__(
            f"Requested duration {months} months violates {bound} bound {limit}",
            months=months,
            bound=bound,
            limit=limit,
        )


class NotAllowedForSuppliersError(InstallmentError):
    """Forwarding without the reviewer's gate, or with supplier offers disabled."""

    code = "not_allowed_for_suppliers"
    status_code = 409

    def __init__(self, request_id: str, reason: str):
        super().__init__(
            f"Installment request {request_id} cannot be forwarded to suppliers: {reason}",
            request_id=request_id,
            reason=reason,
        )


class InvalidTransitionError(InstallmentError):
    """A state machine rule was violated."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: Any, attempted: Any, entity: str = "request"):
        self.current = getattr(current, "value", current)
        self.attempted = getattr(attempted, "value", attempted)
        super().__init__(
            f"Cannot move {entity} from {self.current} to {self.attempted}",
            entity=entity,
            current=self.current,
            attempted=self.attempted,
        )


class ScheduleError(InstallmentError):
    """The approved value cannot be spread over the requested payments."""

    code = "invalid_schedule"
    status_code = 422


class PolicyConfigurationError(InstallmentError):
    """An administrative settings update would leave inconsistent bounds."""

    code = "invalid_settings"
    status_code = 422

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(detail, field=field)
