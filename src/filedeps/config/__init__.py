"""Configuration module."""

from .parser import ConfigSource, ProjectConfig, load_config, load_config_simple

__all__ = ["ConfigSource", "ProjectConfig", "load_config", "load_config_simple"]
