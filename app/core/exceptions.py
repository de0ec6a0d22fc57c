# app/core/exceptions.py
from typing import Dict, Any, Optional
from fastapi import status


class BusinessException(Exception):
    """Base exception for business rule violations."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "business_error"

    def __init__(
        self, message: str, code: str = None, details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.error_code
        self.details = details or {}
        super().__init__(self.message)


# Resource-related exceptions
class ResourceNotFoundException(BusinessException):
    """Exception raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "resource_not_found"


class DuplicateResourceException(BusinessException):
    """Exception raised when attempting to create a duplicate resource."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "resource_already_exists"


class ValidationException(BusinessException):
    """Exception raised when input validation fails."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "validation_error"


# External Service exceptions
class ExternalServiceException(BusinessException):
    """Exception raised when an external service call fails."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "external_service_error"


class IntegrationException(ExternalServiceException):
    """
    Exception raised when a provider exchange or sync fails.

    The message carries the upstream error text so callers can show it.
    """

    error_code = "integration_error"


class RateLimitException(BusinessException):
    """Exception raised when rate limits are hit."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "rate_limit_exceeded"


class TokenDecryptionError(Exception):
    """Raised when a stored token cannot be decrypted or fails authentication."""

