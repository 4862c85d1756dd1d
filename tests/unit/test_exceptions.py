"""
Unit tests for the regflow exception hierarchy
"""

from regflow.exceptions import (
    InvalidRecordError, LockTimeoutError, PageAgentError, RegflowError, RemoteServiceError,
    RequestTimeoutError, StoreError, VerificationTimeoutError,
)


class TestCustomExceptions:
    """Test custom exception classes"""

    def test_regflow_error_basic(self):
        error = RegflowError("Test error", "TEST_CODE", {"key": "value"})

        assert str(error) == "Test error (Code: TEST_CODE, Details: {'key': 'value'})"
        assert error.error_code == "TEST_CODE"
        assert error.details == {"key": "value"}

    def test_regflow_error_defaults(self):
        error = RegflowError("Test error")

        assert error.error_code == "REGFLOW_ERROR"
        assert error.details == {}
        assert str(error) == "Test error (Code: REGFLOW_ERROR)"

    def test_store_error(self):
        error = StoreError("write", "registrationState", "disk full")

        assert error.operation == "write"
        assert error.key == "registrationState"
        assert error.error_code == "STORE_ERROR"
        assert "Store write failed for key 'registrationState': disk full" in str(error)

    def test_lock_timeout_error_is_retryable(self):
        error = LockTimeoutError("popup_abc", 5.0, current_holder="background_def")

        assert error.retryable is True
        assert error.error_code == "LOCK_TIMEOUT"
        assert error.current_holder == "background_def"
        assert "within 5.0 seconds" in str(error)

    def test_remote_service_error(self):
        error = RemoteServiceError("HTTP 503: Service Unavailable", url="/api/health", status_code=503)

        assert error.status_code == 503
        assert error.details == {"url": "/api/health", "status_code": 503}

    def test_remote_service_error_without_details(self):
        error = RemoteServiceError("Connection refused")

        assert error.details == {}
        assert str(error) == "Connection refused (Code: REMOTE_SERVICE_ERROR)"

    def test_request_timeout_error(self):
        error = RequestTimeoutError("GET /api/health", 2.5, {"error": "read timeout"})

        assert error.timeout == 2.5
        assert error.details["error"] == "read timeout"
        assert "timed out after 2.5 seconds" in str(error)

    def test_invalid_record_error(self):
        error = InvalidRecordError("email", "email is required")

        assert error.field == "email"
        assert error.validation_reason == "email is required"
        assert "Invalid email: email is required" in str(error)

    def test_verification_timeout_error(self):
        error = VerificationTimeoutError("session-1", 4, 120.0)

        assert error.attempts == 4
        assert error.error_code == "VERIFICATION_TIMEOUT"
        assert "session-1" in str(error)

    def test_page_agent_error(self):
        error = PageAgentError("fill", "email field not found", {"selectors": ["#email"]})

        assert error.action == "fill"
        assert error.details["selectors"] == ["#email"]
        assert "Page agent failed to fill: email field not found" in str(error)

    def test_all_errors_share_the_base(self):
        for error in (StoreError("get", "k"), LockTimeoutError("h", 1), RemoteServiceError("x"),
                      RequestTimeoutError("op", 1), InvalidRecordError("f", "r"),
                      VerificationTimeoutError("c", 1, 1), PageAgentError("a", "r")):
            assert isinstance(error, RegflowError)
