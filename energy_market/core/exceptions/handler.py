"""
Centralized error handling for the marketplace API.
Provides the service error taxonomy, consistent error responses, logging and HTTP status codes.
"""

import traceback
from typing import Dict, Any, Optional
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime

from energy_market.core.logger.logger import get_logger
from energy_market.infra.config.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")


class ServiceErrorCode:
    """Standard error codes for services"""

    # Validation
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_FIELD = "MISSING_FIELD"
    MALFORMED_MESSAGE = "MALFORMED_MESSAGE"

    # Authentication
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    NONCE_NOT_ISSUED = "NONCE_NOT_ISSUED"
    DOMAIN_MISMATCH = "DOMAIN_MISMATCH"
    URI_MISMATCH = "URI_MISMATCH"
    CHAIN_MISMATCH = "CHAIN_MISMATCH"
    NONCE_MISMATCH = "NONCE_MISMATCH"
    MESSAGE_EXPIRED = "MESSAGE_EXPIRED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"

    # Authorization
    FORBIDDEN = "FORBIDDEN"

    # Business Logic
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INSUFFICIENT_ENERGY = "INSUFFICIENT_ENERGY"
    NOT_FOUND = "NOT_FOUND"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"

    # System
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceError(Exception):
    """
    Standardized service error for internal use.
    Gets converted to proper HTTP response by error handler.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.context = context or {}
        super().__init__(message)


class ValidationError(ServiceError):
    """Malformed or missing input. Never retried."""

    def __init__(self, message: str, code: str = ServiceErrorCode.INVALID_INPUT, **kwargs):
        super().__init__(code, message, status.HTTP_400_BAD_REQUEST, **kwargs)


class MessageParseError(ValidationError):
    """The sign-in message does not follow the wire template."""

    def __init__(self, message: str, code: str = ServiceErrorCode.MALFORMED_MESSAGE, **kwargs):
        super().__init__(message, code, **kwargs)


class AuthError(ServiceError):
    """Authentication failed. The code names the failed check."""

    def __init__(self, code: str, message: str, **kwargs):
        super().__init__(code, message, status.HTTP_401_UNAUTHORIZED, **kwargs)


class UnauthorizedError(ServiceError):
    """Authenticated, but not allowed to touch the resource (ownership)."""

    def __init__(self, message: str = "Not allowed to modify this resource", **kwargs):
        super().__init__(ServiceErrorCode.FORBIDDEN, message, status.HTTP_403_FORBIDDEN, **kwargs)


class NotFoundError(ServiceError):
    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(ServiceErrorCode.NOT_FOUND, message, status.HTTP_404_NOT_FOUND, **kwargs)


class InsufficientBalance(ServiceError):
    def __init__(self, message: str = "Insufficient ETH balance", **kwargs):
        super().__init__(ServiceErrorCode.INSUFFICIENT_BALANCE, message, status.HTTP_400_BAD_REQUEST, **kwargs)


class InsufficientEnergy(ServiceError):
    def __init__(self, message: str = "Insufficient energy available", **kwargs):
        super().__init__(ServiceErrorCode.INSUFFICIENT_ENERGY, message, status.HTTP_400_BAD_REQUEST, **kwargs)


class ExternalSettlementFailure(ServiceError):
    """
    The escrow contract call failed or timed out.
    The ledger is left exactly as it was; clients only see a generic message.
    """

    def __init__(self, message: str = "Settlement with the energy contract failed", **kwargs):
        super().__init__(ServiceErrorCode.SETTLEMENT_FAILED, message, status.HTTP_500_INTERNAL_SERVER_ERROR, **kwargs)


class InternalError(ServiceError):
    def __init__(self, message: str = "An unexpected error occurred. Please try again.", **kwargs):
        super().__init__(ServiceErrorCode.INTERNAL_ERROR, message, status.HTTP_500_INTERNAL_SERVER_ERROR, **kwargs)


class ErrorResponseBuilder:
    """Builds standardized error responses"""

    @staticmethod
    def build_error_response(
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Build standardized error response"""

        response = {
            "success": False,
            "error": {
                "code": error_code,
                "message": message,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        }

        if details:
            response["error"]["details"] = details

        if request_id:
            response["error"]["request_id"] = request_id

        return response


class GlobalErrorHandler:
    """Global error handler for all application errors"""

    @staticmethod
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        """Handle ServiceError exceptions"""

        request_id = _request_id(request)
        log = logger.error if exc.status_code >= 500 else logger.warning

        # Server-side detail only, the client gets the public message
        log(
            f"Service error: {exc.code}",
            extra={
                "error_code": exc.code,
                "error_message": exc.message,
                "status_code": exc.status_code,
                "context": exc.context,
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method
            }
        )

        response = ErrorResponseBuilder.build_error_response(
            error_code=exc.code,
            message=exc.message,
            details=exc.details,
            request_id=request_id
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=response
        )

    @staticmethod
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request body validation errors"""

        request_id = _request_id(request)

        validation_errors = []
        for error in exc.errors():
            field = '.'.join(str(loc) for loc in error['loc'])
            validation_errors.append({
                'field': field,
                'message': error['msg']
            })

        logger.warning(
            f"Validation error: {len(validation_errors)} errors",
            extra={
                "validation_errors": validation_errors,
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method
            }
        )

        response = ErrorResponseBuilder.build_error_response(
            error_code=ServiceErrorCode.INVALID_INPUT,
            message="Validation failed",
            details={"validation_errors": validation_errors},
            request_id=request_id
        )

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=response
        )

    @staticmethod
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions"""

        request_id = _request_id(request)

        # Log full traceback for debugging
        logger.error(
            f"Unexpected error: {type(exc).__name__}",
            extra={
                "error_type": type(exc).__name__,
                "error_message": str(exc),
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "traceback": traceback.format_exc()
            }
        )

        # Never expose internal errors in production
        if settings.DEBUG:
            message = f"Internal error: {str(exc)}"
        else:
            message = "An unexpected error occurred. Please try again."

        response = ErrorResponseBuilder.build_error_response(
            error_code=ServiceErrorCode.INTERNAL_ERROR,
            message=message,
            request_id=request_id
        )

        return JSONResponse(
            status_code=500,
            content=response
        )
