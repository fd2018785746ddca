from typing import Optional, Dict, Any

class PlatformException(Exception):
    """Base exception for all billing platform errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

class WebhookAuthenticationError(PlatformException):
    """
    Raised when an inbound provider event cannot be authenticated.
    Covers malformed payloads as well as missing or invalid signatures.
    """
    def __init__(self, message: str, code: str = "webhook_auth_failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)

class ConfigurationError(PlatformException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)

class ResourceNotFoundError(PlatformException):
    """Raised when a requested resource is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)

class BillingError(PlatformException):
    """Raised when payment or subscription processing fails."""
    def __init__(self, message: str, code: str = "billing_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)

class SubscriptionInvariantError(BillingError):
    """Raised when a Subscription row would be persisted in an invalid state."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="subscription_invariant_violated", details=details)
        self.status_code = 422
