"""labelsync - Declarative mailbox label provisioning and reconciliation.

This package keeps a tenant's Gmail labels or Outlook mail folders in line with
a template-derived desired tree, tracks provider-assigned identifiers in a
local record store, and hands a stable identifier map to downstream workflows.
"""

from labelsync.version import __version__

__all__ = ["__version__"]
