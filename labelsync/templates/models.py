"""Typed label template structures."""

from __future__ import annotations

import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# Placeholder tokens look like "manager#1" or "supplier#10"
SLOT_PATTERN = re.compile(r"^\s*([A-Za-z_]+)#(\d+)\s*$")

SLOT_KINDS = {
    "manager": "team_members",
    "supplier": "vendors",
}


def parse_slot(name: str) -> Optional[tuple[str, int]]:
    """Parse a placeholder token.

    Args:
        name: Label name that may be a placeholder

    Returns:
        Tuple of (slot kind, zero-based index) or None for literal names
    """
    match = SLOT_PATTERN.match(name)
    if not match:
        return None
    return match.group(1).lower(), int(match.group(2)) - 1


class LabelBody(BaseModel):
    """Attributes shared by root and nested template labels."""

    color: Optional[str] = Field(None, description="Background colour as #rrggbb")
    intent: Optional[str] = Field(None, description="Classifier intent routed to this label")
    critical: bool = Field(False, description="Whether the label is business-critical")
    description: Optional[str] = None
    sub: List[LabelNode] = Field(default_factory=list)

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: Optional[str]) -> Optional[str]:
        """Validate hex colour format."""
        if v is None:
            return v
        if not re.fullmatch(r"#[0-9a-fA-F]{6}", v):
            raise ValueError(f"Colour must be a #rrggbb hex value, got {v!r}")
        return v.lower()


class LabelNode(LabelBody):
    """Nested template label."""

    name: str = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def validate_slot_kind(cls, v: str) -> str:
        """Reject placeholders of an unknown kind."""
        slot = parse_slot(v)
        if slot is not None:
            kind, index = slot
            if kind not in SLOT_KINDS:
                raise ValueError(f"Unknown placeholder kind '{kind}' in {v!r}")
            if index < 0:
                raise ValueError(f"Placeholder slots are numbered from 1: {v!r}")
        return v


class LabelTemplate(BaseModel):
    """Base or merged label template."""

    schema_version: str = "1.0.0"
    description: Optional[str] = None
    labels: Dict[str, LabelBody] = Field(default_factory=dict)
    provisioning_order: List[str] = Field(default_factory=list)


class VerticalExtension(BaseModel):
    """Industry-specific override/addition layer over the base template."""

    vertical: str = Field(..., min_length=1)
    aliases: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    labels: Dict[str, LabelBody] = Field(
        default_factory=dict,
        description="Overlay keyed by root label name; unknown names add new roots",
    )
    provisioning_order: List[str] = Field(
        default_factory=list,
        description="Roots appended to the base provisioning order",
    )
    provisioning_order_override: Optional[List[str]] = Field(
        None,
        description="Replaces the merged provisioning order entirely",
    )

    def overlay(self) -> dict:
        """Overlay document for deep merging.

        Only explicitly set fields take part, so defaults never clobber base values.
        """
        return {
            "labels": {
                name: body.model_dump(exclude_unset=True)
                for name, body in self.labels.items()
            },
            "provisioning_order": list(self.provisioning_order),
        }


LabelBody.model_rebuild()
