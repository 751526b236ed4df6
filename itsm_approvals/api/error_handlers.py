"""
Error Handlers

Translate ApprovalError subclasses into their HTTP status and stable error
body; anything unexpected becomes a generic 500 without internals.
"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..errors import ApprovalError
from ..logging_config import get_logger


logger = get_logger("itsm_approvals.api")


async def approval_error_handler(request: Request, exc: ApprovalError) -> JSONResponse:
    """Expected, typed outcomes of engine operations"""
    level = "error" if exc.http_status >= 500 else "warning"
    getattr(logger, level)(
        f"{request.method} {request.url.path} -> {exc.error_code}: {exc.message}"
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Request validation failed: {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": {"errors": jsonable_encoder(exc.errors())}
            }
        }
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {}
            }
        }
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApprovalError, approval_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
