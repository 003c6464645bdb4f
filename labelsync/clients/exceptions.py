"""Exception classes for provider clients and reconciliation."""

from typing import List, Optional


class APIError(Exception):
    """Base exception for provider API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code if available
            response_text: Response body text if available
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_text = response_text

    def __str__(self) -> str:
        """String representation of the error."""
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.response_text:
            # Truncate response text for readability
            response_preview = self.response_text[:200]
            if len(self.response_text) > 200:
                response_preview += "..."
            parts.append(f"Response: {response_preview}")
        return " | ".join(parts)


class AuthenticationError(APIError):
    """Raised when the bearer credential is expired or invalid (401)."""
    pass


class ConflictError(APIError):
    """Raised when a label with the same name already exists in scope (409)."""
    pass


class TransientError(APIError):
    """Base for errors that may succeed when retried."""
    pass


class RateLimitError(TransientError):
    """Raised when rate limit is exceeded (429)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response_text: Response body text
            retry_after: Seconds to wait before retrying
        """
        super().__init__(message, status_code, response_text)
        self.retry_after = retry_after


class ServerError(TransientError):
    """Raised for 5xx server errors."""
    pass


class NetworkError(TransientError):
    """Raised for network-related errors."""
    pass


class FatalError(APIError):
    """Base for errors that must not be retried."""
    pass


class AuthorizationError(FatalError):
    """Raised when the credential lacks the required scope (403)."""
    pass


class ClientError(FatalError):
    """Raised for other 4xx client errors (malformed request)."""
    pass


class ConfigurationError(Exception):
    """Raised when configuration or template data is invalid."""
    pass


class UnknownVerticalError(ConfigurationError):
    """Raised when no template extension exists for a vertical."""

    def __init__(self, vertical: str, available: Optional[List[str]] = None) -> None:
        """Initialize unknown vertical error.

        Args:
            vertical: Requested vertical identifier
            available: Verticals that are supported
        """
        message = f"No label template found for vertical: {vertical}"
        if available:
            message += f" (available: {', '.join(available)})"
        super().__init__(message)
        self.vertical = vertical
        self.available = available or []


class SyncError(Exception):
    """Raised when provider state could not be synchronized into the store."""

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> None:
        """Initialize sync error.

        Args:
            message: Error message
            tenant_id: Tenant being synchronized
            provider: Provider being synchronized
        """
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id
        self.provider = provider


class BlockedError(Exception):
    """Raised for a label whose parent failed or was deferred."""

    def __init__(self, path: str, parent_path: str) -> None:
        super().__init__(f"Label '{path}' blocked: parent '{parent_path}' is unresolved")
        self.path = path
        self.parent_path = parent_path


class DeadlineExceededError(Exception):
    """Raised when retries stop because the run's time budget ran out."""

    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(f"Stopped retrying {operation} after {attempts} attempt(s): run deadline reached")
        self.operation = operation
        self.attempts = attempts


class StateError(Exception):
    """Error with label record store operations."""
    pass


class IncompleteMapError(Exception):
    """Raised when the identifier map cannot be built completely."""

    def __init__(self, message: str, missing: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.missing = missing or []


class BusyError(Exception):
    """Raised when a reconcile run is already in flight for a tenant/provider."""

    def __init__(self, tenant_id: str, provider: str) -> None:
        super().__init__(f"Reconcile already running for tenant {tenant_id} on {provider}")
        self.tenant_id = tenant_id
        self.provider = provider
