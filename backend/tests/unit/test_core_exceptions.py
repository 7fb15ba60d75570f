"""
Unit tests for the custom exception hierarchy.

Verifies inheritance chains, attribute assignment, message formatting and
the error category each exception reports to the status API.

Version: 1.0.0
"""
import pytest

from migration_hub.core.exceptions import (
    AuthenticationError,
    ConnectionTimeoutError,
    DatabaseTransientError,
    ExternalAPIError,
    ImageImportError,
    InvalidAuthState,
    InvalidCredentialError,
    InvalidTransitionError,
    MigrationAlreadyRunningError,
    MigrationHubException,
    MigrationNotFoundError,
    NonRetryableError,
    PersistenceError,
    RateLimitError,
    RetryableError,
    StoreNotFoundError,
    UnsupportedCapabilityError,
    UnsupportedPlatformError,
    ValidationError,
)


pytestmark = pytest.mark.unit


class TestBaseException:
    """Tests for MigrationHubException base class."""

    def test_is_exception(self):
        assert issubclass(MigrationHubException, Exception)

    def test_message_preserved(self):
        exc = MigrationHubException("something went wrong")
        assert str(exc) == "something went wrong"

    def test_default_category_is_fatal(self):
        assert MigrationHubException.category == "fatal"
        assert RetryableError("r").category == "fatal"


class TestRetryableErrors:
    """Tests for the retryable error branch of the hierarchy."""

    def test_external_api_error_attributes(self):
        exc = ExternalAPIError(service="Shopify", message="timeout", status_code=504, body="<html>")
        assert isinstance(exc, RetryableError)
        assert exc.service == "Shopify"
        assert exc.status_code == 504
        assert exc.body == "<html>"
        assert str(exc) == "Shopify API error: timeout"

    def test_external_api_error_default_status_code(self):
        exc = ExternalAPIError(service="Etsy", message="fail")
        assert exc.status_code is None
        assert exc.body is None

    def test_rate_limit_error_attributes(self):
        exc = RateLimitError(service="Shopify", retry_after=120)
        assert isinstance(exc, RetryableError)
        assert exc.retry_after == 120
        assert exc.category == "rate_limit"
        assert "120" in str(exc)

    def test_rate_limit_error_default_retry_after(self):
        assert RateLimitError(service="Etsy").retry_after == 2.0

    @pytest.mark.parametrize("cls", [ConnectionTimeoutError, DatabaseTransientError])
    def test_transient_errors_are_retryable(self, cls):
        assert issubclass(cls, RetryableError)
        assert not issubclass(cls, NonRetryableError)


class TestNonRetryableErrors:
    """Tests for the non-retryable error branch of the hierarchy."""

    @pytest.mark.parametrize("cls,category", [
        (ValidationError, "item"),
        (ImageImportError, "item"),
        (MigrationNotFoundError, "request"),
        (StoreNotFoundError, "request"),
        (UnsupportedPlatformError, "request"),
        (UnsupportedCapabilityError, "request"),
        (AuthenticationError, "auth"),
    ])
    def test_category(self, cls, category):
        assert issubclass(cls, NonRetryableError)
        assert not issubclass(cls, RetryableError)
        assert cls("x").category == category

    def test_persistence_error_keeps_table(self):
        exc = PersistenceError("products", "duplicate key value")
        assert exc.table == "products"
        assert str(exc) == "products: duplicate key value"
        assert exc.category == "item"

    def test_invalid_credential_is_auth(self):
        exc = InvalidCredentialError("Stored credential failed authentication")
        assert isinstance(exc, AuthenticationError)
        assert exc.category == "auth"

    def test_invalid_transition_attributes(self):
        exc = InvalidTransitionError("m-1", "completed", "running")
        assert (exc.migration_id, exc.current, exc.target) == ("m-1", "completed", "running")
        assert "completed" in str(exc)
        assert exc.category == "request"

    def test_already_running_is_invalid_transition(self):
        exc = MigrationAlreadyRunningError("m-1")
        assert isinstance(exc, InvalidTransitionError)
        assert exc.current == "running"

    def test_invalid_auth_state_reason(self):
        assert InvalidAuthState().reason == "invalid_state"
        exc = InvalidAuthState("expired_session")
        assert exc.reason == "expired_session"
        assert "expired_session" in str(exc)


class TestExceptionCatchPatterns:
    """Tests for catch patterns used by the orchestrator and Celery autoretry."""

    def test_non_retryable_does_not_catch_retryable(self):
        exc = ExternalAPIError(service="Shopify", message="500")
        assert not isinstance(exc, NonRetryableError)

    def test_base_catches_everything(self):
        exceptions = [
            RetryableError("r"),
            NonRetryableError("n"),
            ExternalAPIError("svc", "msg"),
            RateLimitError("svc"),
            ValidationError("v"),
            PersistenceError("t", "m"),
            MigrationNotFoundError("m"),
            InvalidTransitionError("m", "a", "b"),
            AuthenticationError("a"),
            InvalidAuthState(),
        ]
        for exc in exceptions:
            assert isinstance(exc, MigrationHubException)
