"""
Standardized error responses for the vouch service
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    # Vouch ledger
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    SELF_VOUCH_NOT_ALLOWED = "SELF_VOUCH_NOT_ALLOWED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    CONFLICT = "CONFLICT"

    # System Errors
    STORAGE_ERROR = "STORAGE_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

BUSINESS_STATUS = {
    ErrorCodes.ACCOUNT_NOT_FOUND: 404,
    ErrorCodes.SELF_VOUCH_NOT_ALLOWED: 400,
    ErrorCodes.INSUFFICIENT_BALANCE: 400,
    ErrorCodes.INVALID_INPUT: 400,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.LOCK_TIMEOUT: 503,
    ErrorCodes.CONFLICT: 409,
}

SERVICE_STATUS = {
    ErrorCodes.STORAGE_ERROR: 503,
}

class BusinessLogicError(Exception):
    """Recoverable error reported to the caller as a structured response"""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        if code:
            self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Infrastructure failure that is fatal to the current request"""
    code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, original_error: Exception = None, code: str = None):
        if code:
            self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

def _trace_ids(request: Request):
    return getattr(request.state, 'trace_id', None), getattr(request.state, 'request_id', None)

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None,
    headers: Dict[str, str] = None
) -> JSONResponse:
    """Create standardized error response"""

    error_response = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(error_response.model_dump()),
        headers=headers
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle vouch ledger rejections"""
    status_code = BUSINESS_STATUS.get(exc.code, 400)
    trace_id, request_id = _trace_ids(request)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "field": exc.field,
        "context": exc.context
    })

    headers = {"Retry-After": "1"} if exc.code == ErrorCodes.LOCK_TIMEOUT else None
    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
        request_id=request_id,
        headers=headers
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""
    status_code = SERVICE_STATUS.get(exc.code, 500)
    trace_id, request_id = _trace_ids(request)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        trace_id=trace_id,
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation exceptions"""
    trace_id, request_id = _trace_ids(request)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
        "request_id": request_id
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        context={"validation_errors": jsonable_encoder(exc.errors())},
        trace_id=trace_id,
        request_id=request_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""
    trace_id, request_id = _trace_ids(request)

    status_to_code = {
        401: ErrorCodes.UNAUTHENTICATED,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.ACCOUNT_NOT_FOUND,
    }
    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
        "request_id": request_id
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
        request_id=request_id,
        headers=getattr(exc, "headers", None)
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    trace_id, request_id = _trace_ids(request)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
        "traceback": traceback.format_exc()
    })

    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
        request_id=request_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
