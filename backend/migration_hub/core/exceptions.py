"""
Custom exception hierarchy for the migration hub.

Exceptions are categorized as:
- RetryableError: Transient errors (network, rate limits, database blips)
- NonRetryableError: Permanent errors that should fail immediately

Every exception also carries a ``category`` from the error taxonomy
reported by the status API:
- auth: credentials rejected or unusable, reconnect required
- rate_limit: provider throttling outlasted the retry budget
- item: one source entity could not be imported
- fatal: infrastructure failure that stops the job
- request: the caller asked for something illegal (bad transition, bad input)
"""


class MigrationHubException(Exception):
    """Base exception for the migration hub."""
    category = "fatal"


# ============================================
# RETRYABLE ERRORS - Transient failures
# ============================================
class RetryableError(MigrationHubException):
    """
    Base class for errors that may succeed on retry.

    - Network timeouts
    - Rate limits (with backoff)
    - Temporary service unavailability
    """
    pass


class ExternalAPIError(RetryableError):
    """
    Error from a source platform API (Shopify, Etsy).

    The raw provider body is kept on the exception for logging only.
    """
    def __init__(self, service: str, message: str, status_code: int = None, body: str = None):
        self.service = service
        self.status_code = status_code
        self.body = body
        super().__init__(f"{service} API error: {message}")


class RateLimitError(RetryableError):
    """
    Rate limit exceeded.

    Should retry after the specified delay.
    """
    category = "rate_limit"

    def __init__(self, service: str, retry_after: float = 2.0):
        self.service = service
        self.retry_after = retry_after
        super().__init__(f"{service} rate limited. Retry after {retry_after}s")


class ConnectionTimeoutError(RetryableError):
    """Connection or timeout error - typically transient."""
    pass


class DatabaseTransientError(RetryableError):
    """
    Transient database error.

    Examples: connection refused, pool exhausted, temporary unavailability
    """
    pass


# ============================================
# NON-RETRYABLE ERRORS - No automatic retry
# ============================================
class NonRetryableError(MigrationHubException):
    """
    Base class for errors that should NOT trigger retry.

    - Validation failures
    - Missing records
    - Authentication errors (need reconnect)
    """
    pass


class ValidationError(NonRetryableError):
    """Invalid input data - retrying won't help."""
    category = "item"


class PersistenceError(NonRetryableError):
    """A row was rejected by the database (constraint, bad payload)."""
    category = "item"

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"{table}: {message}")


class ImageImportError(NonRetryableError):
    """An image could not be downloaded or re-hosted."""
    category = "item"


class MigrationNotFoundError(NonRetryableError):
    """Migration job not found."""
    category = "request"


class StoreNotFoundError(NonRetryableError):
    """Store does not exist or is not owned by the caller."""
    category = "request"


class UnsupportedPlatformError(NonRetryableError):
    """Platform tag has no registered connector."""
    category = "request"


class UnsupportedCapabilityError(NonRetryableError):
    """Connector does not offer the requested capability (e.g. Etsy orders)."""
    category = "request"


class InvalidTransitionError(NonRetryableError):
    """Requested status change is not allowed from the current status."""
    category = "request"

    def __init__(self, migration_id: str, current: str, target: str):
        self.migration_id = migration_id
        self.current = current
        self.target = target
        super().__init__(f"Migration {migration_id} cannot move from {current} to {target}")


class MigrationAlreadyRunningError(InvalidTransitionError):
    """Another run already owns this migration."""

    def __init__(self, migration_id: str):
        super().__init__(migration_id, "running", "running")


class AuthenticationError(NonRetryableError):
    """
    Source platform rejected the credentials.

    Needs a token refresh or a reconnect, not a blind retry.
    """
    category = "auth"


class InvalidCredentialError(AuthenticationError):
    """Stored credential could not be decrypted; reconnect required."""
    pass


class InvalidAuthState(NonRetryableError):
    """
    OAuth callback state is missing, mismatched or expired.

    ``reason`` is surfaced to the dashboard as the ``error`` query value.
    """
    category = "request"

    def __init__(self, reason: str = "invalid_state"):
        self.reason = reason
        super().__init__(f"OAuth state rejected: {reason}")
