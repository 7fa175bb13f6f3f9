"""Threadline - webhook message ingestion and conversation threading."""

__version__ = "0.1.0"
