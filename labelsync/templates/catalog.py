"""Template catalog: loads the base template and vertical extensions from YAML."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from labelsync.clients.exceptions import ConfigurationError, UnknownVerticalError
from labelsync.core.models import normalize_name
from labelsync.templates.merge import deep_merge
from labelsync.templates.models import LabelTemplate, VerticalExtension

logger = structlog.get_logger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "data"


class TemplateValidation(BaseModel):
    """Result of a template integrity check."""

    vertical: str
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping from disk.

    Raises:
        ConfigurationError: If the file is missing, unreadable or not a mapping
    """
    if not path.exists():
        raise ConfigurationError(f"Template file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in template {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Template file must contain a YAML object: {path}")
    return data


class TemplateCatalog:
    """Registry of the base label template and its vertical extensions."""

    def __init__(self, template_dir: Optional[Path] = None) -> None:
        """Initialize template catalog.

        Args:
            template_dir: Directory holding base.yaml and verticals/*.yaml
        """
        self.template_dir = Path(template_dir or DEFAULT_TEMPLATE_DIR)
        self._base: Optional[LabelTemplate] = None
        self._extensions: Optional[Dict[str, VerticalExtension]] = None
        self._logger = logger.bind(template_dir=str(self.template_dir))

    def load_base(self) -> LabelTemplate:
        """Load the base cross-tenant template."""
        if self._base is None:
            path = self.template_dir / "base.yaml"
            try:
                self._base = LabelTemplate.model_validate(_load_yaml(path))
            except ValidationError as e:
                raise ConfigurationError(f"Base template validation failed: {e}") from e
        return self._base

    def load_extensions(self) -> Dict[str, VerticalExtension]:
        """Load vertical extensions keyed by normalized vertical name and alias."""
        if self._extensions is not None:
            return self._extensions

        extensions: Dict[str, VerticalExtension] = {}
        for path in sorted((self.template_dir / "verticals").glob("*.yaml")):
            try:
                extension = VerticalExtension.model_validate(_load_yaml(path))
            except ValidationError as e:
                raise ConfigurationError(f"Vertical template {path.name} is invalid: {e}") from e

            for key in [extension.vertical, *extension.aliases]:
                normalized = normalize_name(key)
                if normalized in extensions:
                    raise ConfigurationError(
                        f"Vertical name '{key}' in {path.name} is already registered "
                        f"by '{extensions[normalized].vertical}'"
                    )
                extensions[normalized] = extension

        self._logger.debug("Loaded vertical extensions", count=len(extensions))
        self._extensions = extensions
        return extensions

    def available_verticals(self) -> List[str]:
        """Canonical names of supported verticals, sorted."""
        return sorted({ext.vertical for ext in self.load_extensions().values()})

    def get_extension(self, vertical: str) -> VerticalExtension:
        """Look up a vertical extension by name or alias (case-insensitive).

        Raises:
            UnknownVerticalError: If the vertical is not registered
        """
        extension = self.load_extensions().get(normalize_name(vertical))
        if extension is None:
            raise UnknownVerticalError(vertical, self.available_verticals())
        return extension

    def merged_template(self, vertical: str) -> LabelTemplate:
        """Apply a vertical extension to the base template.

        Args:
            vertical: Vertical name or alias

        Returns:
            Merged template (placeholders not yet substituted)
        """
        base = self.load_base()
        extension = self.get_extension(vertical)

        merged = deep_merge(base.model_dump(), extension.overlay())
        if extension.provisioning_order_override is not None:
            merged["provisioning_order"] = list(extension.provisioning_order_override)

        try:
            template = LabelTemplate.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(
                f"Merged template for {extension.vertical} is invalid: {e}"
            ) from e

        template.description = f"{base.description or ''} Extended for {extension.vertical}.".strip()
        return template

    def validate_template(self, vertical: str) -> TemplateValidation:
        """Check provisioning order coverage and duplicate intents."""
        extension = self.get_extension(vertical)
        template = self.merged_template(vertical)
        result = TemplateValidation(vertical=extension.vertical)

        ordered = {normalize_name(name) for name in template.provisioning_order}
        labels = {normalize_name(name) for name in template.labels}

        missing = [name for name in template.labels if normalize_name(name) not in ordered]
        if missing:
            result.errors.append(f"Labels missing from provisioning order: {', '.join(missing)}")

        extra = [name for name in template.provisioning_order if normalize_name(name) not in labels]
        if extra:
            result.warnings.append(f"Extra labels in provisioning order: {', '.join(extra)}")

        seen_intents: Dict[str, str] = {}
        for name, body in template.labels.items():
            if not body.intent:
                continue
            if body.intent in seen_intents:
                result.warnings.append(
                    f"Duplicate intent {body.intent} on {seen_intents[body.intent]} and {name}"
                )
            else:
                seen_intents[body.intent] = name

        return result
