"""External calendar linking, sync and credential management for the lab app."""

__version__ = "1.0.0"
