"""
Global error handlers for the application
Provides consistent error response format across all endpoints
"""
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from opsportal.core.exceptions import BaseAPIException
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)


def error_response(request: Request, status_code: int, error: str, message: str, details=None) -> JSONResponse:
    """Build the error envelope shared by all handlers"""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "message": message,
            "details": details if details is not None else {},
            "path": str(request.url.path)
        }
    )


async def base_api_exception_handler(request: Request, exc: BaseAPIException) -> JSONResponse:
    """Handle custom API exceptions"""
    logger.error(f"API Exception: {exc.error_code} - {exc.message}")
    return error_response(request, exc.status_code, exc.error_code, exc.message, exc.details)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors (422)"""
    error_details = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        error_details.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
            "input": str(error.get("input", ""))[:100]  # Limit input length for logging
        })

    logger.error(f"Validation Error on {request.method} {request.url.path}: {error_details}")
    return error_response(request, 422, "VALIDATION_ERROR", "Request validation failed", error_details)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions"""
    logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
    return error_response(request, exc.status_code, "HTTP_ERROR", str(exc.detail))


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy database exceptions"""
    logger.error(f"Database Exception: {exc}")
    return error_response(
        request, 500, "DATABASE_ERROR", "Database operation failed",
        {"original_error": str(exc)}
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(f"Unexpected Exception: {exc}", exc_info=True)
    return error_response(
        request, 500, "INTERNAL_SERVER_ERROR", "An unexpected error occurred",
        {"original_error": str(exc)}
    )
