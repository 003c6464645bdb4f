"""Version information for labelsync."""

__version__ = "0.3.0"
