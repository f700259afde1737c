"""Configuration management module for the Collaborative Sync Core."""

from .config_manager import ConfigManager, get_config_manager

__all__ = ['ConfigManager', 'get_config_manager']
