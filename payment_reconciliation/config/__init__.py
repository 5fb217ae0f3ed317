"""Configuration package for the payment reconciliation engine."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
