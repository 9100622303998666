from typing import Optional, Dict, Any


class BillingEngineError(Exception):
    """Base exception for all billing engine errors."""
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


class TransientError(BillingEngineError):
    """
    Infrastructure hiccup (gateway or database). The item is skipped for this
    tick and picked up again on the next one; never escalated to a transition.
    """
    def __init__(self, message: str, code: str = "transient_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=503, details=details)


class GatewayError(TransientError):
    """
    Raised when the payment gateway rejects or fails a request.
    Access tokens and raw identifiers are scrubbed from the message.
    """
    def __init__(self, message: str, code: str = "gateway_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(self._sanitize(message), code=code, details=details)

    def _sanitize(self, msg: str) -> str:
        import re
        msg = re.sub(r'(?i)(access_token|token|authorization)=[^&\s]+', r'\1=[REDACTED]', msg)
        msg = re.sub(r'(?i)bearer\s+[A-Za-z0-9\-_.]+', 'Bearer [REDACTED]', msg)
        return msg


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer in time: result unknown, retry next tick."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="gateway_timeout", details=details)


class RepositoryUnavailableError(TransientError):
    """Raised when the subscription store cannot be reached."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="repository_unavailable", details=details)


class ConcurrentModificationError(TransientError):
    """Another writer changed the subscription between read and write."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="concurrent_modification", details=details)


class DataIntegrityError(BillingEngineError):
    """
    Records that should reference each other do not. Needs operator
    attention; never repaired by guessing.
    """
    def __init__(self, message: str, code: str = "data_integrity", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=409, details=details)


class SubscriptionNotFoundError(DataIntegrityError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="subscription_not_found", details=details)


class TenantNotFoundError(DataIntegrityError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="tenant_not_found", details=details)


class ConfigurationError(BillingEngineError):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)
