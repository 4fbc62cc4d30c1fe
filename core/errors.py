from typing import Optional


class ServiceError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(ServiceError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ForbiddenError(ServiceError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Not allowed"


class ConflictError(ServiceError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Conflicting state"


class AlreadyPaidError(ConflictError):
    code = "ALREADY_PAID"
    default_message = "Points were already paid for this activity"


class AlreadyEvaluatedError(ConflictError):
    code = "ALREADY_EVALUATED"
    default_message = "This share has already been evaluated"


class InvalidInputError(ServiceError):
    code = "INVALID_INPUT"
    status_code = 400
    default_message = "Invalid input"


class InsufficientFundsError(ServiceError):
    code = "INSUFFICIENT_FUNDS"
    status_code = 400
    default_message = "Not enough points"


class WindowExpiredError(ServiceError):
    code = "WINDOW_EXPIRED"
    status_code = 400
    default_message = "The evaluation window has closed"


class InternalError(ServiceError):
    pass
