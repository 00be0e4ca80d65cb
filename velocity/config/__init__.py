"""Configuration management module."""

from velocity.config.settings import SOL_MINT, Settings, load_settings

__all__ = ["SOL_MINT", "Settings", "load_settings"]
