"""Global exception handling."""

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from src.shared.errors import LifecycleError

logger = structlog.get_logger()


async def lifecycle_exception_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        exc.error_code,
        request_id=request_id,
        error=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "request_id": request_id},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")

    if isinstance(exc, LifecycleError):
        return await lifecycle_exception_handler(request, exc)

    if isinstance(exc, ValueError):
        logger.warning("bad_request", request_id=request_id, error=str(exc))
        return JSONResponse(
            status_code=400,
            content={"error": "bad_request", "message": str(exc), "request_id": request_id},
        )

    if isinstance(exc, (KeyError, LookupError)):
        logger.warning("not_found", request_id=request_id, error=str(exc))
        return JSONResponse(
            status_code=404,
            content={"error": "not_found", "message": str(exc), "request_id": request_id},
        )

    logger.exception("unhandled_exception", request_id=request_id, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": request_id,
        },
    )
