"""Command-line surface for the startup pipeline."""
