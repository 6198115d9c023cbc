"""Configuration module."""

from mcpbridge.config.manager import ConfigManager

__all__ = ["ConfigManager"]
