"""Credential sources for provider calls."""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import structlog
from pydantic import SecretStr

from labelsync.clients.exceptions import AuthenticationError
from labelsync.core.models import Provider

logger = structlog.get_logger(__name__)


class CredentialSource(ABC):
    """Supplies and refreshes per-tenant bearer credentials.

    Token acquisition itself lives outside labelsync; this is the seam
    through which a host application hands tokens in.
    """

    @abstractmethod
    async def get_credential(self, tenant_id: str, provider: Provider) -> SecretStr:
        """Return the current credential for a tenant's provider account."""

    @abstractmethod
    async def refresh_credential(self, tenant_id: str, provider: Provider) -> SecretStr:
        """Refresh and return the credential after an authentication failure."""


class StaticCredentialSource(CredentialSource):
    """Credentials loaded from configuration.

    Static tokens cannot be refreshed; ``refresh_credential`` returns the same
    token so the retry surfaces a second authentication failure.
    """

    def __init__(self, tokens: Optional[Dict[Tuple[str, Provider], SecretStr]] = None) -> None:
        self._tokens: Dict[Tuple[str, Provider], SecretStr] = dict(tokens or {})
        self._logger = logger.bind(component="StaticCredentialSource")

    def set_token(self, tenant_id: str, provider: Provider, token: SecretStr) -> None:
        self._tokens[(tenant_id, Provider(provider))] = token

    async def get_credential(self, tenant_id: str, provider: Provider) -> SecretStr:
        try:
            return self._tokens[(tenant_id, Provider(provider))]
        except KeyError:
            raise AuthenticationError(
                f"No credential configured for tenant {tenant_id} on {Provider(provider).value}"
            ) from None

    async def refresh_credential(self, tenant_id: str, provider: Provider) -> SecretStr:
        self._logger.warning(
            "Static credentials cannot be refreshed",
            tenant_id=tenant_id,
            provider=Provider(provider).value,
        )
        return await self.get_credential(tenant_id, provider)
