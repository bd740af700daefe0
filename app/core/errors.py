"""Application error taxonomy.

Services raise these; `app.main` maps them to HTTP responses. Anything that is not an
`AppError` surfaces as a 500.
"""


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Forbidden"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Request conflicts with an operation in progress"


class PaymentGatewayError(AppError):
    status_code = 500
    default_message = "Payment gateway error"


class ServiceUnavailableError(AppError):
    status_code = 503
    default_message = "A required service is temporarily unavailable"
