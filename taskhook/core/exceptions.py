"""
Error taxonomy shared by the task API, the delivery worker and the
notification service.

Each error carries the HTTP status and machine-readable code it maps to at
the API boundary; `register_exception_handlers` renders them as
`{"error": {"code": ..., "message": ...}}`.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class TaskhookError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


class SignatureInvalidError(TaskhookError):
    """Invalid or missing webhook signature"""

    status_code = 401
    code = "INVALID_SIGNATURE"


class PayloadMalformedError(TaskhookError):
    """Invalid request payload"""

    status_code = 400
    code = "INVALID_PAYLOAD"

    def __init__(self, message: str = "", details: list | None = None):
        super().__init__(message)
        self.details = details or []


class CircuitOpenError(TaskhookError):
    """Downstream service is known to be unavailable"""

    status_code = 503
    code = "CIRCUIT_OPEN"

    def __init__(self, service_name: str):
        super().__init__(f"Circuit breaker is OPEN for {service_name}")
        self.service_name = service_name


class DownstreamFailureError(TaskhookError):
    """Webhook call failed (non-2xx response or connection error)"""

    status_code = 502
    code = "DOWNSTREAM_FAILURE"

    def __init__(self, message: str = "", status: int | None = None):
        super().__init__(message)
        self.status = status


class DeliveryExhaustedError(TaskhookError):
    """Webhook delivery failed after all attempts"""

    status_code = 502
    code = "DELIVERY_EXHAUSTED"


class NotFoundError(TaskhookError):
    """Resource not found"""

    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(TaskhookError):
    """Not allowed to access this resource"""

    status_code = 403
    code = "FORBIDDEN"


async def _taskhook_error_handler(request: Request, exc: TaskhookError) -> JSONResponse:
    error: dict = {"code": exc.code, "message": exc.message}
    details = getattr(exc, "details", None)
    if details:
        error["details"] = details
    return JSONResponse(status_code=exc.status_code, content={"error": error})


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in error["loc"][1:]) or str(error["loc"][0]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "VALIDATION_ERROR", "message": "Invalid request parameters", "details": details}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TaskhookError, _taskhook_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
