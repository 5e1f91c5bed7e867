"""Configuration package for the KLIPZ payouts service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
