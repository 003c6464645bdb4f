"""Gmail label adapter."""

import hashlib
from typing import Any, Dict, List, Optional

import httpx
from pydantic import SecretStr

from labelsync.clients.base import CreateResult, ProviderAdapter
from labelsync.clients.exceptions import ClientError, ConflictError
from labelsync.core.models import PATH_SEPARATOR, Provider, ProviderLabel

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

# System labels that Gmail may report with type "user" on older mailboxes
SYSTEM_LABEL_IDS = frozenset({
    "INBOX", "SENT", "DRAFT", "SPAM", "TRASH", "UNREAD", "STARRED",
    "IMPORTANT", "CHAT",
})


def text_color_for(background: str) -> str:
    """Pick black or white text for a #rrggbb background."""
    value = background.lstrip("#")
    red, green, blue = (int(value[i:i + 2], 16) for i in (0, 2, 4))
    luminance = 0.299 * red + 0.587 * green + 0.114 * blue
    return "#000000" if luminance > 150 else "#ffffff"


class GmailAdapter(ProviderAdapter):
    """Gmail labels API adapter.

    Gmail has no parent field: nesting is encoded as slash-joined names
    ("BANKING/e-Transfer"). The adapter derives immediate parent ids by
    matching the name prefix against the other labels in the snapshot and
    reports leaf names, so callers see the same shape as Outlook folders.
    """

    provider = Provider.GMAIL

    def __init__(
        self,
        base_url: str = GMAIL_BASE_URL,
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
        # mailbox -> provider_id -> full slash-joined name, refreshed by list_all
        self._full_names: Dict[str, Dict[str, str]] = {}

    def _is_conflict(self, response: httpx.Response) -> bool:
        # Gmail sometimes reports duplicate names as 400 "Label name exists or conflicts"
        return response.status_code == 400 and "exists or conflicts" in response.text

    async def list_all(self, credential: SecretStr) -> List[ProviderLabel]:
        """List user labels with derived parent ids."""
        data = await self.get_json("labels", credential)
        raw = [label for label in data.get("labels", []) if self._is_user_label(label)]

        by_full_name = {label["name"]: label["id"] for label in raw}
        self._full_names[self._mailbox_key(credential)] = {label["id"]: label["name"] for label in raw}

        labels: List[ProviderLabel] = []
        for label in raw:
            full_name = label["name"]
            parent_id = None
            name = full_name
            if PATH_SEPARATOR in full_name:
                parent_name, leaf = full_name.rsplit(PATH_SEPARATOR, 1)
                parent_id = by_full_name.get(parent_name)
                if parent_id is not None:
                    name = leaf
            labels.append(ProviderLabel(
                provider_id=label["id"],
                name=name,
                parent_provider_id=parent_id,
            ))

        self._logger.debug("Listed Gmail labels", total=len(data.get("labels", [])), user_labels=len(labels))
        return labels

    async def create(
        self,
        credential: SecretStr,
        name: str,
        parent_provider_id: Optional[str] = None,
        color_tag: Optional[str] = None,
    ) -> CreateResult:
        """Create a Gmail label, nesting it under the parent's full name."""
        full_name = name
        if parent_provider_id is not None:
            parent_name = await self._full_name_of(credential, parent_provider_id)
            full_name = f"{parent_name}{PATH_SEPARATOR}{name}"

        body: Dict[str, Any] = {
            "name": full_name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        }
        if color_tag:
            body["color"] = {
                "backgroundColor": color_tag,
                "textColor": text_color_for(color_tag),
            }

        try:
            data = await self.post_json("labels", credential, json_data=body)
        except ConflictError:
            self._logger.info("Gmail label already exists", label=full_name)
            return CreateResult.conflicted()

        names = self._full_names.setdefault(self._mailbox_key(credential), {})
        names[data["id"]] = data.get("name", full_name)
        self._logger.info("Created Gmail label", label=full_name, provider_id=data["id"])
        return CreateResult.created(data["id"])

    async def _full_name_of(self, credential: SecretStr, provider_id: str) -> str:
        key = self._mailbox_key(credential)
        if provider_id not in self._full_names.get(key, {}):
            await self.list_all(credential)
        try:
            return self._full_names[key][provider_id]
        except KeyError:
            raise ClientError(
                f"Parent label {provider_id} no longer exists",
                status_code=404,
            ) from None

    @staticmethod
    def _mailbox_key(credential: SecretStr) -> str:
        return hashlib.sha256(credential.get_secret_value().encode()).hexdigest()

    @staticmethod
    def _is_user_label(label: Dict[str, Any]) -> bool:
        label_id = label.get("id", "")
        if label.get("type") != "user":
            return False
        if label_id in SYSTEM_LABEL_IDS or label_id.startswith("CATEGORY_"):
            return False
        return bool(label.get("name"))
