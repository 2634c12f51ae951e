"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Subscription errors (2xxx)
    SUBSCRIPTION_NOT_FOUND = "ERR_2001"
    INVALID_RADIUS = "ERR_2002"
    INVALID_FREQUENCY = "ERR_2003"
    INVALID_LOCATION = "ERR_2004"

    # User errors (3xxx)
    USER_NOT_FOUND = "ERR_3001"
    MISSING_CAPABILITY = "ERR_3002"

    # Alert / batch errors (4xxx)
    ALERT_NOT_FOUND = "ERR_4001"
    BATCH_NOT_FOUND = "ERR_4002"
    EVENT_NOT_FOUND = "ERR_4003"

    # External service errors (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class InvalidRadiusError(ValidationException):
    """Raised when a subscription radius is outside the allowed options"""

    def __init__(self, radius_km: Any, allowed: tuple[int, ...]):
        super().__init__(
            message=f"Radius {radius_km} km is not allowed",
            field="radius_km",
            details={"radius_km": radius_km, "allowed": list(allowed)},
            error_code=ErrorCode.INVALID_RADIUS,
        )


class InvalidLocationError(ValidationException):
    """Raised when coordinates are outside valid latitude/longitude ranges"""

    def __init__(self, latitude: Any, longitude: Any):
        super().__init__(
            message=f"Invalid location: {latitude}, {longitude}",
            field="location",
            details={"latitude": latitude, "longitude": longitude},
            error_code=ErrorCode.INVALID_LOCATION,
        )


class SubscriptionNotFoundError(NotFoundException):
    """Raised when a subscription is missing or soft-deleted"""

    def __init__(self, subscription_id: int):
        super().__init__(
            resource="Subscription",
            identifier=subscription_id,
            error_code=ErrorCode.SUBSCRIPTION_NOT_FOUND,
        )


class MarketEventNotFoundError(NotFoundException):
    """Raised when a market event is missing"""

    def __init__(self, event_id: int):
        super().__init__(
            resource="MarketEvent",
            identifier=event_id,
            error_code=ErrorCode.EVENT_NOT_FOUND,
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class WhatsAppError(ExternalServiceException):
    """Raised when WhatsApp API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class MissingCapabilityError(AppException):
    """Raised when a user lacks the profile an action needs"""

    def __init__(self, user_id: int, capability: str):
        super().__init__(
            message=f"User {user_id} is not a {capability}",
            error_code=ErrorCode.MISSING_CAPABILITY,
            status_code=403,
            details={"user_id": user_id, "capability": capability}
        )
