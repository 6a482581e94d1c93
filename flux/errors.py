"""
Errors raised by the engine and the stores. Each one carries a human-readable
message that is safe to show to the user as-is.
"""


class FluxError(Exception):
    """Base class. `code` is a stable machine identifier, `status_code` the HTTP mapping."""

    code = "error"
    status_code = 400
    resync = False
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.resync:
            body["resync"] = True
        return body


class InvalidInputError(FluxError):
    """Bad user input. Nothing was written."""

    code = "invalid_input"
    status_code = 422
    default_message = "Invalid input"


class NotFoundError(FluxError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class ForbiddenError(FluxError):
    code = "forbidden"
    status_code = 403
    default_message = "You are not allowed to do this"


class ConflictError(FluxError):
    """The shared state moved under us. Client must re-fetch instead of retrying."""

    code = "conflict"
    status_code = 409
    resync = True
    default_message = "This order was changed by someone else"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"

    def __init__(self, current_status=None, target_status=None, message: str | None = None):
        self.current_status = current_status
        self.target_status = target_status
        if message is None and current_status is not None:
            message = f"Order cannot move from {_label(current_status)} to {_label(target_status)}"
        super().__init__(message)


class OrderUnavailableError(ConflictError):
    code = "order_unavailable"
    default_message = "This order is no longer available"


class ActiveOrderExistsError(ConflictError):
    code = "active_order_exists"
    default_message = "Finish your current delivery before accepting another order"


class ValidationPendingError(ConflictError):
    code = "validation_pending"

    def __init__(self, pending: int):
        self.pending = pending
        plural = "delivery" if pending == 1 else "deliveries"
        super().__init__(f"{pending} {plural} still waiting for code validation")

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["pending_validations"] = self.pending
        return body


class CodesAlreadyGeneratedError(ConflictError):
    code = "codes_already_generated"
    default_message = "Delivery codes were already generated for this order"


class AlreadyValidatedError(ConflictError):
    code = "already_validated"
    default_message = "This delivery was already validated"


class CodeNotSetError(ConflictError):
    code = "code_not_set"
    default_message = "No delivery code is set for this delivery"


class EntitlementError(FluxError):
    """No active subscription. Not retried; the client is sent to the subscription flow."""

    code = "no_entitlement"
    status_code = 402
    default_message = "You need active credits to do this"

    def __init__(self, message: str | None = None, redirect: str | None = None):
        self.redirect = redirect
        super().__init__(message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.redirect:
            body["redirect"] = self.redirect
        return body


class ValidationLockedError(FluxError):
    """Attempt cap reached for a delivery. Only an operator can unlock it."""

    code = "validation_locked"
    status_code = 423
    default_message = "Maximum validation attempts reached. Contact the company."


class TransportError(FluxError):
    code = "unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable, try again"


def _label(status) -> str:
    return getattr(status, "value", status)
