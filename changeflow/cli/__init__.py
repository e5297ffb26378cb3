"""Command line interface for changeflow."""
