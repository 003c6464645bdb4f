"""Outlook (Microsoft Graph) mail folder adapter."""

from typing import Any, Dict, List, Optional

import httpx
from pydantic import SecretStr

from labelsync.clients.base import CreateResult, ProviderAdapter
from labelsync.clients.exceptions import ConflictError
from labelsync.core.models import Provider, ProviderLabel, normalize_name

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0/me"

# Well-known folders, compared against normalized display names
SYSTEM_FOLDER_NAMES = frozenset({
    "inbox", "sent items", "sentitems", "drafts", "junk email", "junkemail",
    "deleted items", "deleteditems", "outbox", "archive", "conversation history",
    "sync issues", "conflicts", "local failures", "server failures",
    "rss feeds", "rss subscriptions", "scheduled", "search folders",
    "clutter", "notes", "tasks",
})

PAGE_SIZE = 100


class OutlookAdapter(ProviderAdapter):
    """Microsoft Graph mailFolders adapter.

    Folders carry a real parent reference, but the listing endpoint is
    paged and only returns one level, so the adapter walks childFolders
    recursively. Well-known system folders and their subtrees are skipped.
    """

    provider = Provider.OUTLOOK

    def __init__(
        self,
        base_url: str = GRAPH_BASE_URL,
        timeout_seconds: int = 30,
        rate_limit_per_minute: int = 600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            rate_limit_per_minute=rate_limit_per_minute,
            transport=transport,
        )

    async def list_all(self, credential: SecretStr) -> List[ProviderLabel]:
        """List user folders at every depth."""
        labels: List[ProviderLabel] = []
        roots = await self._list_page_chain("mailFolders", credential)
        await self._collect(roots, None, credential, labels)
        self._logger.debug("Listed Outlook folders", folders=len(labels))
        return labels

    async def _collect(
        self,
        folders: List[Dict[str, Any]],
        parent_id: Optional[str],
        credential: SecretStr,
        labels: List[ProviderLabel],
    ) -> None:
        for folder in folders:
            name = folder.get("displayName", "")
            if not name or normalize_name(name) in SYSTEM_FOLDER_NAMES:
                continue
            labels.append(ProviderLabel(
                provider_id=folder["id"],
                name=name,
                parent_provider_id=parent_id,
            ))
            if folder.get("childFolderCount", 0) > 0:
                children = await self._list_page_chain(
                    f"mailFolders/{folder['id']}/childFolders", credential
                )
                await self._collect(children, folder["id"], credential, labels)

    async def _list_page_chain(self, path: str, credential: SecretStr) -> List[Dict[str, Any]]:
        """Follow @odata.nextLink until the listing is exhausted."""
        items: List[Dict[str, Any]] = []
        next_path: Optional[str] = path
        params: Optional[Dict[str, Any]] = {"$top": PAGE_SIZE}

        while next_path:
            data = await self.get_json(next_path, credential, params=params)
            items.extend(data.get("value", []))
            next_path = data.get("@odata.nextLink")
            # nextLink already carries the query string
            params = None

        return items

    async def create(
        self,
        credential: SecretStr,
        name: str,
        parent_provider_id: Optional[str] = None,
        color_tag: Optional[str] = None,
    ) -> CreateResult:
        """Create a mail folder at the root or under a parent folder.

        Folders have no colour, so ``color_tag`` is ignored.
        """
        if parent_provider_id is None:
            path = "mailFolders"
        else:
            path = f"mailFolders/{parent_provider_id}/childFolders"

        try:
            data = await self.post_json(path, credential, json_data={"displayName": name})
        except ConflictError:
            self._logger.info("Outlook folder already exists", folder=name, parent_id=parent_provider_id)
            return CreateResult.conflicted()

        self._logger.info("Created Outlook folder", folder=name, provider_id=data["id"])
        return CreateResult.created(data["id"])
