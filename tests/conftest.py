"""Shared pytest fixtures for labelsync tests."""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest
import yaml
from pydantic import SecretStr

from labelsync.clients.base import CreateResult
from labelsync.clients.credentials import StaticCredentialSource
from labelsync.clients.exceptions import AuthenticationError
from labelsync.core.models import (
    PATH_SEPARATOR,
    DesiredStateTree,
    LabelSpec,
    Provider,
    ProviderLabel,
    normalize_name,
)
from labelsync.core.policy import CallPolicy
from labelsync.core.store import InMemoryLabelStore


class FakeProviderAdapter:
    """In-memory provider with parent-id nesting and sibling name uniqueness."""

    def __init__(self, provider: Provider = Provider.GMAIL, prefix: str = "lbl") -> None:
        self.provider = provider
        self.prefix = prefix
        self.labels: Dict[str, ProviderLabel] = {}
        self.create_calls: List[tuple] = []
        self.list_calls = 0
        self.credentials_seen: List[str] = []

        # Exceptions raised, in order, by successive create calls for a name
        self.create_failures: Dict[str, List[Exception]] = {}
        # Exceptions raised, in order, by successive list_all calls
        self.list_failures: List[Exception] = []
        # Names that report a conflict without a matching label
        self.phantom_conflicts: set = set()
        # When set, any other credential is rejected with 401
        self.valid_tokens: Optional[set] = None

        self.create_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False
        self._counter = 0

    def add(self, name: str, parent_id: Optional[str] = None, provider_id: Optional[str] = None) -> str:
        """Seed a label directly on the provider side."""
        if provider_id is None:
            self._counter += 1
            provider_id = f"{self.prefix}_{self._counter}"
        self.labels[provider_id] = ProviderLabel(
            provider_id=provider_id, name=name, parent_provider_id=parent_id
        )
        return provider_id

    def remove(self, provider_id: str) -> None:
        del self.labels[provider_id]

    def _check_credential(self, credential: SecretStr) -> None:
        token = credential.get_secret_value()
        self.credentials_seen.append(token)
        if self.valid_tokens is not None and token not in self.valid_tokens:
            raise AuthenticationError("Authentication failed", status_code=401)

    async def list_all(self, credential: SecretStr) -> List[ProviderLabel]:
        self.list_calls += 1
        self._check_credential(credential)
        if self.list_failures:
            raise self.list_failures.pop(0)
        return [label.model_copy() for label in self.labels.values()]

    async def create(
        self,
        credential: SecretStr,
        name: str,
        parent_provider_id: Optional[str] = None,
        color_tag: Optional[str] = None,
    ) -> CreateResult:
        self.create_calls.append((name, parent_provider_id))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.create_delay:
                await asyncio.sleep(self.create_delay)
            self._check_credential(credential)

            failures = self.create_failures.get(name)
            if failures:
                raise failures.pop(0)

            if name in self.phantom_conflicts:
                return CreateResult.conflicted()

            key = normalize_name(name)
            for label in self.labels.values():
                if label.parent_provider_id == parent_provider_id and normalize_name(label.name) == key:
                    return CreateResult.conflicted()

            return CreateResult.created(self.add(name, parent_provider_id))
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True

    def id_of(self, path: str) -> Optional[str]:
        """Provider id for a slash-joined path, walking parent ids."""
        parent_id = None
        for part in path.split(PATH_SEPARATOR):
            match = [
                label for label in self.labels.values()
                if label.parent_provider_id == parent_id and label.name == part
            ]
            if not match:
                return None
            parent_id = match[0].provider_id
        return parent_id


class MultiMailboxAdapter:
    """Routes calls to one fake mailbox per credential, like a real provider."""

    def __init__(self, provider: Provider = Provider.GMAIL, prefix: Optional[str] = None) -> None:
        self.provider = provider
        self.prefix = prefix
        self.mailboxes: Dict[str, FakeProviderAdapter] = {}
        self.closed = False

    def mailbox(self, token: str) -> FakeProviderAdapter:
        if token not in self.mailboxes:
            self.mailboxes[token] = FakeProviderAdapter(self.provider, prefix=self.prefix or f"{token}_lbl")
        return self.mailboxes[token]

    async def list_all(self, credential: SecretStr) -> List[ProviderLabel]:
        return await self.mailbox(credential.get_secret_value()).list_all(credential)

    async def create(self, credential, name, parent_provider_id=None, color_tag=None) -> CreateResult:
        mailbox = self.mailbox(credential.get_secret_value())
        return await mailbox.create(credential, name, parent_provider_id, color_tag)

    async def close(self) -> None:
        self.closed = True


def build_tree(paths: Sequence[str], vertical: str = "Test") -> DesiredStateTree:
    """Desired tree from slash-joined paths listed parent-first."""
    specs = []
    for ordinal, path in enumerate(paths):
        parent_path, _, name = path.rpartition(PATH_SEPARATOR)
        specs.append(LabelSpec(
            name=name,
            path=path,
            parent_path=parent_path or None,
            ordinal=ordinal,
        ))
    return DesiredStateTree(vertical=vertical, specs=specs)


@pytest.fixture
def fake_adapter():
    """Create a fake Gmail-like provider adapter."""
    return FakeProviderAdapter(Provider.GMAIL)


@pytest.fixture
def gmail_mailboxes():
    """Create a fake Gmail provider with one mailbox per credential."""
    return MultiMailboxAdapter(Provider.GMAIL)


@pytest.fixture
def outlook_mailboxes():
    """Create a fake Outlook provider with one mailbox per credential."""
    return MultiMailboxAdapter(Provider.OUTLOOK)


@pytest.fixture
def numbered_gmail_mailboxes():
    """Create a fake Gmail provider whose mailboxes all number labels Label_N."""
    return MultiMailboxAdapter(Provider.GMAIL, prefix="Label")


@pytest.fixture
def store():
    """Create an empty in-memory label store."""
    return InMemoryLabelStore()


@pytest.fixture
def credentials():
    """Create a static credential source for tenants T1 and T2."""
    return StaticCredentialSource({
        ("T1", Provider.GMAIL): SecretStr("token-1"),
        ("T1", Provider.OUTLOOK): SecretStr("token-1o"),
        ("T2", Provider.GMAIL): SecretStr("token-2"),
    })


@pytest.fixture
def policy(credentials):
    """Create a call policy without backoff delays."""
    return CallPolicy(credentials, max_attempts=3, backoff_seconds=0, max_backoff_seconds=0)


@pytest.fixture
def tree_factory():
    """Factory for desired trees built from paths."""
    return build_tree


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """Create a minimal template directory with BANKING and MANAGER roots."""
    base = {
        "schema_version": "1.0.0",
        "provisioning_order": ["BANKING", "MANAGER"],
        "labels": {
            "BANKING": {"color": "#16a766", "intent": "ai.financial_transaction"},
            "MANAGER": {
                "color": "#ffad47",
                "sub": [{"name": "manager#1"}, {"name": "manager#2"}, {"name": "manager#3"}],
            },
        },
    }
    extension = {"vertical": "Test Vertical", "aliases": ["Testing"]}

    (tmp_path / "verticals").mkdir()
    (tmp_path / "base.yaml").write_text(yaml.safe_dump(base, sort_keys=False))
    (tmp_path / "verticals" / "test.yaml").write_text(yaml.safe_dump(extension, sort_keys=False))
    return tmp_path
