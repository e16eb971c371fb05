"""Command-line interface for the secure finality tools."""
