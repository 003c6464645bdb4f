"""Template resolution: base + vertical + tenant substitutions -> desired state tree."""

from typing import Dict, List, Optional, Sequence

import structlog

from labelsync.clients.exceptions import ConfigurationError
from labelsync.core.models import (
    PATH_SEPARATOR,
    DesiredStateTree,
    LabelSpec,
    TenantProfile,
    join_path,
    normalize_name,
)
from labelsync.templates.catalog import TemplateCatalog
from labelsync.templates.models import SLOT_KINDS, LabelNode, LabelTemplate, parse_slot

logger = structlog.get_logger(__name__)


class TemplateResolver:
    """Builds a tenant's desired state tree from the template catalog.

    Resolution is deterministic: every step walks lists or insertion-ordered
    mappings, so identical inputs always yield the same ordered output.
    """

    def __init__(self, catalog: Optional[TemplateCatalog] = None) -> None:
        """Initialize template resolver.

        Args:
            catalog: Template catalog (defaults to the packaged templates)
        """
        self.catalog = catalog or TemplateCatalog()
        self._logger = logger.bind(component="TemplateResolver")

    def resolve_profile(self, profile: TenantProfile) -> DesiredStateTree:
        """Resolve the desired tree for a tenant profile."""
        return self.resolve(profile.vertical, profile.team_members, profile.vendors)

    def resolve(
        self,
        vertical: str,
        team_members: Sequence[str] = (),
        vendors: Sequence[str] = (),
    ) -> DesiredStateTree:
        """Resolve a desired state tree.

        Args:
            vertical: Vertical identifier or alias
            team_members: Ordered team member names for manager slots
            vendors: Ordered vendor names for supplier slots

        Returns:
            Desired state tree in provisioning (pre-order) order

        Raises:
            UnknownVerticalError: If the vertical is not registered
            ConfigurationError: If template data is malformed
        """
        template = self.catalog.merged_template(vertical)
        slot_values = {
            "team_members": [name.strip() for name in team_members],
            "vendors": [name.strip() for name in vendors],
        }

        roots = [
            LabelNode.model_validate({**template.labels[name].model_dump(), "name": name})
            for name in self._root_order(template)
        ]
        roots = self._dedupe(self._substitute(roots, slot_values))

        specs: List[LabelSpec] = []
        self._emit(roots, parent=None, specs=specs)

        tree = DesiredStateTree(vertical=self.catalog.get_extension(vertical).vertical, specs=specs)
        self._logger.debug(
            "Resolved desired state tree",
            vertical=tree.vertical,
            labels=len(tree),
            team_members=len(team_members),
            vendors=len(vendors),
        )
        return tree

    def _root_order(self, template: LabelTemplate) -> List[str]:
        """Root names in provisioning order, then undeclared roots in template order."""
        by_key = {normalize_name(name): name for name in template.labels}
        ordered: List[str] = []
        seen = set()

        for entry in template.provisioning_order:
            key = normalize_name(entry)
            if key in seen:
                continue
            if key not in by_key:
                self._logger.warning("Provisioning order names unknown label", label=entry)
                continue
            seen.add(key)
            ordered.append(by_key[key])

        for key, name in by_key.items():
            if key not in seen:
                seen.add(key)
                ordered.append(name)
        return ordered

    def _substitute(self, nodes: List[LabelNode], slot_values: Dict[str, List[str]]) -> List[LabelNode]:
        """Replace placeholder names; drop placeholders without a supplied value."""
        resolved: List[LabelNode] = []
        for node in nodes:
            name = node.name.strip()
            slot = parse_slot(name)
            if slot is not None:
                kind, index = slot
                values = slot_values[SLOT_KINDS[kind]]
                value = values[index] if index < len(values) else ""
                if not value:
                    continue
                if parse_slot(value) is not None:
                    self._logger.warning("Ignoring placeholder-shaped substitution value", slot=name)
                    continue
                # A slash would silently nest the label one level deeper
                name = value.replace(PATH_SEPARATOR, "-")
            if not name:
                continue

            resolved.append(node.model_copy(update={
                "name": name,
                "sub": self._substitute(node.sub, slot_values),
            }))
        return resolved

    def _dedupe(self, nodes: List[LabelNode]) -> List[LabelNode]:
        """Collapse case-insensitive duplicates within one sibling scope."""
        survivors: Dict[str, LabelNode] = {}
        for node in nodes:
            key = normalize_name(node.name)
            if key in survivors:
                first = survivors[key]
                survivors[key] = first.model_copy(update={"sub": first.sub + node.sub})
                self._logger.debug("Dropped duplicate sibling label", label=node.name, kept=first.name)
            else:
                survivors[key] = node

        return [
            node.model_copy(update={"sub": self._dedupe(node.sub)})
            for node in survivors.values()
        ]

    def _emit(
        self,
        nodes: List[LabelNode],
        parent: Optional[LabelSpec],
        specs: List[LabelSpec],
    ) -> None:
        """Flatten nodes into specs, parents before children."""
        for node in nodes:
            if PATH_SEPARATOR in node.name:
                raise ConfigurationError(
                    f"Template label name may not contain '{PATH_SEPARATOR}': {node.name!r}"
                )
            parent_path = parent.path if parent else None
            spec = LabelSpec(
                name=node.name,
                path=join_path(parent_path, node.name),
                parent_path=parent_path,
                color_tag=node.color or (parent.color_tag if parent else None),
                intent_tag=node.intent or (parent.intent_tag if parent else None),
                critical=node.critical,
                ordinal=len(specs),
                description=node.description,
            )
            specs.append(spec)
            self._emit(node.sub, parent=spec, specs=specs)
