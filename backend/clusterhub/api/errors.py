"""Translation of service-layer errors into HTTP responses.

Service errors carry a stable ``code``; the handler maps each error family
onto one status code and returns ``{"detail": ..., "code": ...}``.
"""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import ORJSONResponse

from clusterhub.exceptions import (
    ClusterHubError,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    UnavailableError,
)

log = structlog.get_logger()

# Most specific first; subclasses share their parent's status
STATUS_BY_ERROR: list[tuple[type[ClusterHubError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: ClusterHubError) -> int:
    """HTTP status code for a service error."""
    for error_cls, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def clusterhub_error_handler(request: Request, exc: ClusterHubError) -> ORJSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        log.error("service_error", code=exc.code, error_message=exc.message, path=request.url.path)
    else:
        log.info("request_rejected", code=exc.code, status_code=status_code, path=request.url.path)

    headers = {"Retry-After": "1"} if isinstance(exc, UnavailableError) else None
    return ORJSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the service error handler on an application."""
    app.add_exception_handler(ClusterHubError, clusterhub_error_handler)
