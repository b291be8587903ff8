"""Offline-capable data access core for a learning-platform client."""

__version__ = "0.1.0"
