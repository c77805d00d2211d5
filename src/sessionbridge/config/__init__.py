"""Configuration management for sessionbridge.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides.
"""

from sessionbridge.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
