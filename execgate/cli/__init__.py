"""Command-line interface for execgate."""
