"""Command line interface for board-sync."""
