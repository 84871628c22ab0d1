"""Custom domain lifecycle service for multi-tenant brand sites."""

__version__ = "0.1.0"
