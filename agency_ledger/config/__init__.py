"""Configuration package for the agency ledger."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
