"""Persistence and domain helpers for the tenant integration gateway."""

__version__ = "0.1.0"
