"""CLI commands for changeflow."""
