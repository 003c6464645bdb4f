"""Label templates and desired state resolution."""

from labelsync.templates.catalog import TemplateCatalog, TemplateValidation
from labelsync.templates.merge import deep_merge
from labelsync.templates.models import LabelBody, LabelNode, LabelTemplate, VerticalExtension
from labelsync.templates.resolver import TemplateResolver

__all__ = [
    "TemplateCatalog",
    "TemplateValidation",
    "TemplateResolver",
    "deep_merge",
    "LabelBody",
    "LabelNode",
    "LabelTemplate",
    "VerticalExtension",
]
