"""
Custom exception classes for the application
Provides consistent error handling across all modules
"""
from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API-related errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationException(BaseAPIException):
    """Exception raised when authentication fails"""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 401, "AUTHENTICATION_ERROR", details)


class ExternalServiceException(BaseAPIException):
    """Exception raised when external service calls fail"""

    def __init__(
        self,
        message: str = "External service error",
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 502,
        error_code: str = "EXTERNAL_SERVICE_ERROR"
    ):
        super().__init__(message, status_code, error_code, details)


class BitrixException(ExternalServiceException):
    """Exception raised when Bitrix integration fails"""

    def __init__(self, message: str = "Bitrix integration error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, 502, "BITRIX_ERROR")


class BitrixRateLimitError(ExternalServiceException):
    """Bitrix rejected the request because of its rate limit (HTTP 429 / QUERY_LIMIT_EXCEEDED)"""

    def __init__(self, message: str = "Bitrix rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, 429, "RATE_LIMITED")


class CircuitOpenError(ExternalServiceException):
    """Raised by the circuit breaker when calls are short-circuited"""

    def __init__(self, message: str = "Circuit breaker is OPEN - API temporarily unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, 503, "CIRCUIT_OPEN")


class DatabaseException(BaseAPIException):
    """Exception raised when database operations fail"""

    def __init__(self, message: str = "Database error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 500, "DATABASE_ERROR", details)


class StorageUnavailableException(DatabaseException):
    """The order store cannot be reached at all (connection level failure)"""

    def __init__(self, message: str = "Order storage is unreachable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status_code = 503
        self.error_code = "STORAGE_UNAVAILABLE"


class TransformException(BaseAPIException):
    """Exception raised when a Bitrix deal cannot be transformed into an order"""

    def __init__(self, message: str = "Deal transform failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 422, "TRANSFORM_ERROR", details)


class SyncFailedException(BaseAPIException):
    """Raised by HTTP handlers when a sync cycle aborted"""

    def __init__(self, message: str = "Global sync failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 503, "SYNC_FAILED", details)
