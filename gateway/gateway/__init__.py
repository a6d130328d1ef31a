"""HTTP layer of the tenant integration gateway."""

__version__ = "0.1.0"
