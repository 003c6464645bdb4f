"""Base HTTP client with rate limiting and provider error mapping."""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
import structlog
from asyncio_throttle import Throttler
from pydantic import BaseModel, SecretStr

from labelsync.clients.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ClientError,
    ConflictError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from labelsync.core.models import Provider, ProviderLabel

logger = structlog.get_logger(__name__)


class CreateResult(BaseModel):
    """Outcome of a label creation call.

    A duplicate-name conflict is reported here instead of raised, so callers
    can resolve the existing identifier by lookup.
    """

    provider_id: Optional[str] = None
    conflict: bool = False

    @classmethod
    def created(cls, provider_id: str) -> "CreateResult":
        return cls(provider_id=provider_id)

    @classmethod
    def conflicted(cls) -> "CreateResult":
        return cls(conflict=True)


class BaseAPIClient(ABC):
    """Abstract base class for provider API clients."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 30,
        rate_limit_per_minute: int = 600,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the base API client.

        Args:
            base_url: Base URL for the API
            timeout_seconds: Request timeout in seconds
            rate_limit_per_minute: Maximum requests per minute
            user_agent: Custom user agent string
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.rate_limit_per_minute = rate_limit_per_minute

        headers = {
            "User-Agent": user_agent or self._get_default_user_agent(),
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            follow_redirects=True,
            transport=transport,
        )

        self._throttler = Throttler(rate_limit=rate_limit_per_minute, period=60)

        self._request_count = 0
        self._error_count = 0
        self._last_request_time: Optional[float] = None

        self._logger = logger.bind(
            client_type=self.__class__.__name__,
            base_url=self.base_url,
        )

    async def __aenter__(self) -> "BaseAPIClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._logger.debug("Closing API client", **self.get_stats())
            await self._client.aclose()

    def _get_auth_headers(self, credential: SecretStr) -> Dict[str, str]:
        """Bearer authentication headers for one request."""
        return {"Authorization": f"Bearer {credential.get_secret_value()}"}

    def _get_default_user_agent(self) -> str:
        """Get default user agent string."""
        from labelsync.version import __version__
        return f"labelsync/{__version__}"

    async def _make_request(
        self,
        method: str,
        path: str,
        credential: SecretStr,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request with rate limiting and error mapping.

        Args:
            method: HTTP method
            path: Endpoint path relative to the base URL, or an absolute URL
            credential: Bearer credential for this request
            params: Query parameters
            json_data: JSON request body

        Returns:
            Successful HTTP response

        Raises:
            APIError: Subclass matching the failure
        """
        async with self._throttler:
            if path.startswith("http://") or path.startswith("https://"):
                url = path
            else:
                url = f"{self.base_url}/{path.lstrip('/')}"

            self._request_count += 1
            self._last_request_time = time.time()
            request_id = f"req_{self._request_count}"

            self._logger.debug(
                "Making API request",
                request_id=request_id,
                method=method,
                url=url,
                has_json_data=json_data is not None,
            )

            try:
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_data,
                    headers=self._get_auth_headers(credential),
                )
            except httpx.RequestError as e:
                self._error_count += 1
                self._logger.error(
                    "Network error during API request",
                    request_id=request_id,
                    error=str(e),
                )
                raise NetworkError(f"Network error: {e}") from e

        self._logger.debug(
            "API request completed",
            request_id=request_id,
            status_code=response.status_code,
            response_size=len(response.content),
        )

        if response.is_success:
            return response

        self._error_count += 1
        raise self._map_error(response)

    def _map_error(self, response: httpx.Response) -> APIError:
        """Translate a failed response into the client error taxonomy."""
        status = response.status_code
        text = response.text

        if status == 401:
            return AuthenticationError("Authentication failed", status_code=status, response_text=text)
        if status == 403:
            return AuthorizationError("Authorization failed", status_code=status, response_text=text)
        if status == 409 or self._is_conflict(response):
            return ConflictError("Resource already exists", status_code=status, response_text=text)
        if status == 429:
            return RateLimitError(
                "Rate limit exceeded",
                status_code=status,
                response_text=text,
                retry_after=self._get_retry_after(response),
            )
        if 400 <= status < 500:
            return ClientError(f"Client error: {status}", status_code=status, response_text=text)
        if 500 <= status < 600:
            return ServerError(f"Server error: {status}", status_code=status, response_text=text)
        return APIError(f"Unexpected status code: {status}", status_code=status, response_text=text)

    def _is_conflict(self, response: httpx.Response) -> bool:
        """Provider-specific detection of duplicate-name errors sent without 409."""
        return False

    def _get_retry_after(self, response: httpx.Response) -> Optional[int]:
        """Extract retry-after value from response headers."""
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return int(retry_after)
            except ValueError:
                pass
        return None

    async def get_json(
        self,
        path: str,
        credential: SecretStr,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make a GET request and return the JSON body."""
        response = await self._make_request("GET", path, credential, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise APIError(f"Failed to parse JSON response: {e}") from e

    async def post_json(
        self,
        path: str,
        credential: SecretStr,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make a POST request and return the JSON body."""
        response = await self._make_request("POST", path, credential, json_data=json_data)
        try:
            return response.json()
        except ValueError as e:
            raise APIError(f"Failed to parse JSON response: {e}") from e

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": self._error_count / max(self._request_count, 1),
            "last_request_time": self._last_request_time,
            "rate_limit_per_minute": self.rate_limit_per_minute,
            "base_url": self.base_url,
        }


class ProviderAdapter(BaseAPIClient):
    """Provider-neutral label operations over one mailbox API.

    Higher layers only see ``ProviderLabel`` entities with immediate parent
    identifiers, whatever nesting model the provider uses.
    """

    provider: Provider

    @abstractmethod
    async def list_all(self, credential: SecretStr) -> List[ProviderLabel]:
        """Return the full current label snapshot, flattened.

        Args:
            credential: Tenant bearer credential

        Returns:
            Every user label/folder with its immediate parent identifier
        """

    @abstractmethod
    async def create(
        self,
        credential: SecretStr,
        name: str,
        parent_provider_id: Optional[str] = None,
        color_tag: Optional[str] = None,
    ) -> CreateResult:
        """Create a label under an optional parent.

        Args:
            credential: Tenant bearer credential
            name: Leaf label name
            parent_provider_id: Identifier of the parent label, None for roots
            color_tag: Optional #rrggbb background colour

        Returns:
            Created identifier, or a conflict outcome for duplicate names

        Raises:
            AuthenticationError: Credential expired or invalid
            TransientError: Rate limit or network failure
            FatalError: Malformed request
        """

    async def health_check(self, credential: SecretStr) -> bool:
        """Check that the provider is reachable with this credential."""
        try:
            await self.list_all(credential)
            return True
        except APIError as e:
            self._logger.error("Provider health check failed", error=str(e))
            return False
