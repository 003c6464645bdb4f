"""Core data models for label reconciliation."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

PATH_SEPARATOR = "/"


def utc_now() -> datetime:
    """Current UTC timestamp."""
    return datetime.now(timezone.utc)


def normalize_name(name: str) -> str:
    """Normalize a label name for case-insensitive comparison."""
    return " ".join(name.split()).casefold()


def join_path(parent_path: Optional[str], name: str) -> str:
    """Join a parent path and a leaf name."""
    if parent_path:
        return f"{parent_path}{PATH_SEPARATOR}{name}"
    return name


class Provider(str, Enum):
    """Supported mailbox providers."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"


class LabelSpec(BaseModel):
    """A single label in the desired state tree."""

    name: str
    path: str
    parent_path: Optional[str] = None
    color_tag: Optional[str] = None
    intent_tag: Optional[str] = None
    critical: bool = False
    ordinal: int
    description: Optional[str] = None

    @property
    def depth(self) -> int:
        """Nesting depth (0 for root labels)."""
        return self.path.count(PATH_SEPARATOR)

    @property
    def normalized_key(self) -> str:
        """Case-folded path used for sibling-scoped comparison."""
        return PATH_SEPARATOR.join(normalize_name(part) for part in self.path.split(PATH_SEPARATOR))


class DesiredStateTree(BaseModel):
    """Ordered, tenant-specific target set of labels (root-first)."""

    vertical: str
    specs: List[LabelSpec] = Field(default_factory=list)

    def __iter__(self):
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def paths(self) -> List[str]:
        """Label paths in provisioning order."""
        return [spec.path for spec in self.specs]

    def get(self, path: str) -> Optional[LabelSpec]:
        """Find a spec by path (case-insensitive)."""
        key = PATH_SEPARATOR.join(normalize_name(part) for part in path.split(PATH_SEPARATOR))
        for spec in self.specs:
            if spec.normalized_key == key:
                return spec
        return None

    def children(self, path: Optional[str]) -> List[LabelSpec]:
        """Direct children of ``path`` (roots when ``path`` is None)."""
        return [spec for spec in self.specs if spec.parent_path == path]

    def leaves(self) -> List[LabelSpec]:
        """Specs without children."""
        parents = {spec.parent_path for spec in self.specs if spec.parent_path}
        return [spec for spec in self.specs if spec.path not in parents]


class LabelRecord(BaseModel):
    """Persisted system-of-record row for one provider-confirmed label."""

    provider_id: str = Field(..., min_length=1)
    tenant_id: str
    provider: Provider
    name: str
    parent_provider_id: Optional[str] = None
    synced_at: datetime = Field(default_factory=utc_now)
    deleted: bool = False
    created_by_sync: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple:
        """Unique store key; provider ids are only unique within one mailbox."""
        return (self.tenant_id, self.provider.value, self.provider_id)

    def mark_seen(self, name: str, parent_provider_id: Optional[str], seen_at: datetime) -> None:
        """Record confirmed presence in a provider snapshot."""
        self.name = name
        self.parent_provider_id = parent_provider_id
        self.synced_at = seen_at
        self.deleted = False


class ProviderLabel(BaseModel):
    """Provider entity in the normalized adapter shape."""

    provider_id: str
    name: str
    parent_provider_id: Optional[str] = None


class TenantProfile(BaseModel):
    """Business profile declaring the inputs of a desired label tree."""

    tenant_id: str = Field(..., min_length=1)
    vertical: str = Field(..., min_length=1)
    team_members: List[str] = Field(default_factory=list)
    vendors: List[str] = Field(default_factory=list)
    providers: List[Provider] = Field(default_factory=lambda: [Provider.GMAIL])

    @field_validator("team_members", "vendors")
    @classmethod
    def strip_names(cls, v: List[str]) -> List[str]:
        """Trim whitespace; blank entries keep their slot so indexes stay stable."""
        return [name.strip() for name in v]
