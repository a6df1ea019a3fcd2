"""
posguard - startup-time database health pipeline for the point-of-sale desktop app.

The package validates the embedded SQLite file, relocates it from deprecated
paths, checks schema compatibility, applies versioned migrations, and runs
backup-guaranteed repair before anything else is allowed to open the database.

Import boundary: importing the package root must not load config, configure
logging, or touch the filesystem. Use ``posguard.health.orchestrator.open_database`` as the
single entrypoint for the rest of the application.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
