"""Command-line interface for labelsync."""
