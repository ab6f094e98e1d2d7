"""Command-line entry point for the outbreak data layer."""
