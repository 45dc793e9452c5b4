"""Configuration module"""

from .settings import Settings, get_settings, load_yaml_config

__all__ = ["Settings", "get_settings", "load_yaml_config"]
