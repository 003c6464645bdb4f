"""Identifier map: stable label path -> provider id lookup for downstream workflows."""

import re
from typing import Dict, Iterator, List, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from labelsync.clients.exceptions import IncompleteMapError
from labelsync.core.models import PATH_SEPARATOR, DesiredStateTree, LabelRecord, normalize_name

logger = structlog.get_logger(__name__)

ENV_PREFIX = "LABEL_"
_NON_ALNUM = re.compile(r"[^A-Z0-9]+")


def _path_key(path: str) -> str:
    return PATH_SEPARATOR.join(normalize_name(part) for part in path.split(PATH_SEPARATOR))


def environment_key(path: str, prefix: str = ENV_PREFIX) -> str:
    """Environment variable name for a label path.

    ``BANKING/e-Transfer`` becomes ``LABEL_BANKING_E_TRANSFER``.
    """
    parts = [_NON_ALNUM.sub("_", part.upper()).strip("_") for part in path.split(PATH_SEPARATOR)]
    return prefix + "_".join(part for part in parts if part)


class IdentifierMap(BaseModel):
    """Label path to provider identifier, for one tenant/provider."""

    tenant_id: str
    provider: str
    entries: Dict[str, str] = Field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def __getitem__(self, path: str) -> str:
        return self.entries[path]

    def get(self, path: str) -> Optional[str]:
        return self.entries.get(path)

    def to_environment(self, prefix: str = ENV_PREFIX) -> Dict[str, str]:
        """Render entries as environment variables.

        Raises:
            IncompleteMapError: If two paths collapse to the same variable name
        """
        env: Dict[str, str] = {}
        sources: Dict[str, str] = {}
        for path, provider_id in self.entries.items():
            key = environment_key(path, prefix)
            if key in env:
                raise IncompleteMapError(
                    f"Labels '{sources[key]}' and '{path}' both map to {key}",
                    missing=[path],
                )
            env[key] = provider_id
            sources[key] = path
        return env


class IdentifierMapBuilder:
    """Derives the identifier map from live records and the desired tree."""

    def live_paths(self, records: List[LabelRecord]) -> Dict[str, str]:
        """Full path of every live record, keyed by normalized path.

        Records whose parent chain leaves the live set are orphans and are
        left out.
        """
        by_id: Mapping[str, LabelRecord] = {r.provider_id: r for r in records if not r.deleted}
        paths: Dict[str, str] = {}

        for record in by_id.values():
            parts = [record.name]
            seen = {record.provider_id}
            current = record
            orphan = False
            while current.parent_provider_id is not None:
                parent = by_id.get(current.parent_provider_id)
                if parent is None or parent.provider_id in seen:
                    orphan = True
                    break
                seen.add(parent.provider_id)
                parts.append(parent.name)
                current = parent

            if orphan:
                logger.debug("Skipping orphaned label", provider_id=record.provider_id, name=record.name)
                continue

            key = _path_key(PATH_SEPARATOR.join(reversed(parts)))
            # Lowest id wins when duplicate siblings exist
            if key not in paths or record.provider_id < paths[key]:
                paths[key] = record.provider_id

        return paths

    def build(
        self,
        tenant_id: str,
        provider: str,
        tree: DesiredStateTree,
        records: List[LabelRecord],
    ) -> IdentifierMap:
        """One entry per desired label, keyed by its display path.

        Raises:
            IncompleteMapError: If any desired label has no live record
        """
        live = self.live_paths(records)
        entries: Dict[str, str] = {}
        missing: List[str] = []

        for spec in tree.specs:
            provider_id = live.get(spec.normalized_key)
            if provider_id is None:
                missing.append(spec.path)
            else:
                entries[spec.path] = provider_id

        if missing:
            logger.warning(
                "Identifier map incomplete",
                tenant_id=tenant_id,
                provider=provider,
                missing=len(missing),
            )
            raise IncompleteMapError(
                f"{len(missing)} desired label(s) have no live provider record: {', '.join(missing)}",
                missing=missing,
            )

        return IdentifierMap(tenant_id=tenant_id, provider=provider, entries=entries)
