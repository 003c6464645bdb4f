"""Provider API clients for labelsync."""

from labelsync.clients.base import BaseAPIClient, CreateResult, ProviderAdapter
from labelsync.clients.credentials import CredentialSource, StaticCredentialSource
from labelsync.clients.gmail import GmailAdapter
from labelsync.clients.outlook import OutlookAdapter

__all__ = [
    "BaseAPIClient",
    "CreateResult",
    "ProviderAdapter",
    "CredentialSource",
    "StaticCredentialSource",
    "GmailAdapter",
    "OutlookAdapter",
]
