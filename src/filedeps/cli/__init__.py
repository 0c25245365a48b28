"""Command-line interface for filedeps."""
