"""
Standardized error responses for the payout service
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
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
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Business Logic
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    PROVIDER_UNDERFUNDED = "PROVIDER_UNDERFUNDED"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    ACCOUNT_VERIFICATION_FAILED = "ACCOUNT_VERIFICATION_FAILED"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

    # External Service Errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"

BUSINESS_STATUS_CODES = {
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.INSUFFICIENT_FUNDS: 400,
    ErrorCodes.PROVIDER_REJECTED: 400,
    ErrorCodes.ACCOUNT_VERIFICATION_FAILED: 400,
    ErrorCodes.TRANSACTION_NOT_FOUND: 404,
    ErrorCodes.DUPLICATE_REQUEST: 429,
    ErrorCodes.PROVIDER_UNDERFUNDED: 503,
}

SERVICE_STATUS_CODES = {
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCodes.TIMEOUT_ERROR: 504,
}

class BusinessLogicError(Exception):
    """Rejection the caller can act on; carries a code and structured context"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return BUSINESS_STATUS_CODES.get(self.code, 400)

class ServiceError(Exception):
    """Infrastructure or collaborator failure"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return SERVICE_STATUS_CODES.get(self.code, 500)

HTTP_STATUS_CODES = {
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.TRANSACTION_NOT_FOUND,
    429: ErrorCodes.DUPLICATE_REQUEST,
    503: ErrorCodes.SERVICE_UNAVAILABLE,
}

def create_error_response(
    request: Request,
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
) -> JSONResponse:
    """Build the JSON error envelope, tagged with the request's trace ids"""
    error_response = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=getattr(request.state, 'trace_id', None),
        request_id=getattr(request.state, 'request_id', None),
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(error_response.model_dump()))

def _log_extra(request: Request, **extra) -> Dict[str, Any]:
    return {
        "trace_id": getattr(request.state, 'trace_id', None),
        "request_id": getattr(request.state, 'request_id', None),
        **extra,
    }

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    logger.warning(f"Business logic error: {exc.code} - {exc.message}",
                   extra=_log_extra(request, error_code=exc.code, field=exc.field, context=exc.context))
    return create_error_response(request, exc.code, exc.message, exc.status_code,
                                 field=exc.field, context=exc.context)

async def service_exception_handler(request: Request, exc: ServiceError):
    original = str(exc.original_error) if exc.original_error else None
    logger.error(f"Service error: {exc.code} - {exc.message}",
                 extra=_log_extra(request, error_code=exc.code, original_error=original))
    return create_error_response(request, exc.code, exc.message, exc.status_code)

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request body failed schema validation; report the first offending field"""
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []) if loc != "body")
    message = first_error.get("msg", "Validation error")
    logger.warning(f"Validation error: {message} on field {field}", extra=_log_extra(request))
    return create_error_response(
        request, ErrorCodes.VALIDATION_ERROR, f"Validation error on field '{field}': {message}", 400, field=field
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    error_code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}",
                   extra=_log_extra(request, status_code=exc.status_code))
    return create_error_response(request, error_code, str(exc.detail), exc.status_code)

async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", extra=_log_extra(request, traceback=traceback.format_exc()))
    # Internal details stay in the log
    return create_error_response(
        request, ErrorCodes.INTERNAL_SERVER_ERROR, "An unexpected error occurred. Please try again later.", 500
    )

def add_error_handlers(app):
    """Register the payout error envelope on a FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
