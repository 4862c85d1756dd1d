"""
Custom exceptions for registration orchestration error handling
"""

from typing import Optional


class RegflowError(Exception):
    """Base exception class for all registration-orchestration errors"""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "REGFLOW_ERROR"
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} (Code: {self.error_code}, Details: {self.details})"
        return f"{self.message} (Code: {self.error_code})"


class StoreError(RegflowError):
    """Exception raised when the persistent state store cannot be read or written"""

    def __init__(self, operation: str, key: str, reason: Optional[str] = None):
        message = f"Store {operation} failed for key '{key}'"
        if reason:
            message += f": {reason}"

        details = {
            "operation": operation,
            "key": key,
            "reason": reason
        }
        super().__init__(message, "STORE_ERROR", details)
        self.operation = operation
        self.key = key
        self.reason = reason


class LockTimeoutError(RegflowError):
    """Exception raised when the cross-context lock cannot be acquired in time"""

    retryable = True

    def __init__(self, holder_id: str, timeout: float, current_holder: Optional[str] = None):
        message = f"Could not acquire state lock within {timeout} seconds"
        details = {
            "holder_id": holder_id,
            "timeout": timeout,
            "current_holder": current_holder
        }
        super().__init__(message, "LOCK_TIMEOUT", details)
        self.holder_id = holder_id
        self.timeout = timeout
        self.current_holder = current_holder


class RemoteServiceError(RegflowError):
    """Exception raised when the remote account service fails or is unreachable"""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        error_details = {}
        if url:
            error_details["url"] = url
        if status_code:
            error_details["status_code"] = status_code

        super().__init__(message, "REMOTE_SERVICE_ERROR", error_details)
        self.url = url
        self.status_code = status_code


class RequestTimeoutError(RegflowError):
    """Exception raised when a single remote call exceeds its own timeout"""

    def __init__(self, operation: str, timeout: float, details: Optional[dict] = None):
        message = f"Operation '{operation}' timed out after {timeout} seconds"
        error_details = {
            "operation": operation,
            "timeout": timeout
        }
        if details:
            error_details.update(details)

        super().__init__(message, "REQUEST_TIMEOUT", error_details)
        self.operation = operation
        self.timeout = timeout


class InvalidRecordError(RegflowError):
    """Exception raised when a registration record violates its invariants"""

    def __init__(self, field: str, reason: str):
        message = f"Invalid {field}: {reason}"
        details = {
            "field": field,
            "validation_reason": reason
        }

        super().__init__(message, "INVALID_RECORD", details)
        self.field = field
        self.validation_reason = reason


class VerificationTimeoutError(RegflowError):
    """Exception raised when no verification code arrives within the retry budget"""

    def __init__(self, correlation: str, attempts: int, deadline: float):
        message = f"No verification code for {correlation} after {attempts} attempt(s) of {deadline} seconds"
        details = {
            "correlation": correlation,
            "attempts": attempts,
            "deadline": deadline
        }
        super().__init__(message, "VERIFICATION_TIMEOUT", details)
        self.correlation = correlation
        self.attempts = attempts
        self.deadline = deadline


class PageAgentError(RegflowError):
    """Exception raised when the page automation agent reports a failure"""

    def __init__(self, action: str, reason: str, details: Optional[dict] = None):
        message = f"Page agent failed to {action}: {reason}"
        error_details = {"action": action, "reason": reason}
        if details:
            error_details.update(details)

        super().__init__(message, "PAGE_AGENT_ERROR", error_details)
        self.action = action
        self.reason = reason
