"""Flow engine for the WeWork customer-service bot backend."""

__version__ = "1.0.0"
