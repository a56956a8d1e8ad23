"""Configuration module for the account API."""

from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
